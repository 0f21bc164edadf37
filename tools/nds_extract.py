#!/usr/bin/env python3
"""
Nintendo DS (.nds) extraction helper.

Current capabilities:
- Report the decoded cartridge header and icon/banner record.
- Export the ARM9/ARM7 binaries as ELF objects.
- Export the icon as PNG and the DSi animated icon as a looping GIF.
- Verify the header, logo, secure area and banner CRC-16 values.
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from typing import Any, Dict, List, Optional, Sequence

import yaml

from nds_elf import executable_to_elf, extract_executables
from nds_format import NDSDecodeError, NDSHeader, NDSRom, decode_rom, verify_checksums
from nds_icon import iter_animation, output_names, render_icon, save_animation_gif, save_icon_png


def _load_config(path: pathlib.Path) -> Dict[str, Any]:
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if ext == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    return data


def _to_int(v: Any) -> int:
    if isinstance(v, bool):
        raise ValueError(f"Expected int-like value, got: {type(v).__name__}")
    if isinstance(v, int):
        return int(v)
    if isinstance(v, str):
        return int(v, 0)
    raise ValueError(f"Expected int-like value, got: {type(v).__name__}")


def _to_bool(v: Any, key: str) -> bool:
    if isinstance(v, bool):
        return v
    raise ValueError(f"Config '{key}' must be true or false, got: {type(v).__name__}")


def _read_rom(path: str) -> bytes:
    return pathlib.Path(path).read_bytes()


def _header_report(h: NDSHeader) -> Dict[str, object]:
    return {
        "title": h.title.text,
        "gamecode": h.gamecode.text,
        "makercode": f"0x{h.makercode:04X}",
        "unitcode": h.unitcode,
        "encryption_seed": h.encryption_seed,
        "device_capacity": h.device_capacity,
        "gamerevision": h.gamerevision,
        "romversion": h.romversion,
        "autostart": h.autostart,
        "arm9": {
            "offset": f"0x{h.arm9.offset:08X}",
            "entry": f"0x{h.arm9.entry_address:08X}",
            "load": f"0x{h.arm9.load_address:08X}",
            "size": h.arm9.size,
        },
        "arm7": {
            "offset": f"0x{h.arm7.offset:08X}",
            "entry": f"0x{h.arm7.entry_address:08X}",
            "load": f"0x{h.arm7.load_address:08X}",
            "size": h.arm7.size,
        },
        "fnt": {"offset": f"0x{h.fnt_offset:08X}", "size": h.fnt_size},
        "fat": {"offset": f"0x{h.fat_offset:08X}", "size": h.fat_size},
        "arm9_overlay": {"offset": f"0x{h.arm9_overlay_offset:08X}", "size": h.arm9_overlay_size},
        "arm7_overlay": {"offset": f"0x{h.arm7_overlay_offset:08X}", "size": h.arm7_overlay_size},
        "icon_banner_offset": f"0x{h.icon_banner_offset:08X}",
        "secure_area_crc": f"0x{h.secure_area_crc:04X}",
        "ntr_region_size": h.ntr_region_size,
        "header_size": h.header_size,
        "logo_crc": f"0x{h.logo_crc:04X}",
        "header_crc": f"0x{h.header_crc:04X}",
    }


def cmd_rom_info(args: argparse.Namespace) -> int:
    raw = _read_rom(args.rom)
    rom = decode_rom(raw)
    icon = rom.icon
    frames = sum(1 for _ in iter_animation(icon.dsi_icon)) if icon.dsi_icon is not None else 0
    report = {
        "rom": args.rom,
        "size": len(raw),
        "header": _header_report(rom.header),
        "icon": {
            "version": icon.version,
            "crc": [f"0x{c:04X}" for c in icon.crc],
            "titles": icon.title_map(),
            "dsi_icon": icon.has_dsi_icon,
            "animation_frames": frames,
        },
    }
    if args.json:
        pathlib.Path(args.json).write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))
    return 0


def _resolve_extract_options(args: argparse.Namespace, cfg: Dict[str, Any]) -> Dict[str, Any]:
    names = cfg.get("names") or {}
    if not isinstance(names, dict):
        raise ValueError("Config 'names' must be a mapping")
    scale = _to_int(args.scale if args.scale is not None else cfg.get("scale", 1))
    if scale < 1:
        raise ValueError("scale must be >= 1")
    return {
        "png": _to_bool(cfg.get("png", True), "png") and not args.no_png,
        "gif": _to_bool(cfg.get("gif", True), "gif") and not args.no_gif,
        "elf": _to_bool(cfg.get("elf", True), "elf") and not args.no_elf,
        "frames": _to_bool(cfg.get("frames", False), "frames") or args.frames,
        "scale": scale,
        "names": {str(k): str(v) for k, v in names.items()},
    }


def _output_path(out_dir: pathlib.Path, name: str) -> pathlib.Path:
    root = out_dir.resolve()
    path = (root / name).resolve()
    if path == root or root not in path.parents:
        raise ValueError(f"Output name escapes the output folder: {name!r}")
    return path


def _export_rom(rom: NDSRom, raw: bytes, out_dir: pathlib.Path, opts: Dict[str, Any]) -> Dict[str, Any]:
    gamecode = rom.header.gamecode.text
    names = output_names(gamecode, opts["names"])
    # Every name is checked before anything is written.
    for name in names.values():
        _output_path(out_dir, name.replace("{index}", "0"))
    outputs: List[Dict[str, Any]] = []

    if opts["elf"]:
        for payload in extract_executables(rom.header, raw):
            path = _output_path(out_dir, names[f"{payload.name}_elf"])
            path.write_bytes(executable_to_elf(payload))
            outputs.append(
                {
                    "type": "elf",
                    "name": payload.name,
                    "path": str(path),
                    "offset": f"0x{payload.descriptor.offset:08X}",
                    "size": len(payload.data),
                }
            )

    if opts["png"]:
        path = _output_path(out_dir, names["icon_png"])
        save_icon_png(render_icon(rom.icon.bitmap, rom.icon.palette), path, scale=opts["scale"])
        outputs.append({"type": "png", "path": str(path)})

    dsi = rom.icon.dsi_icon
    if dsi is not None and (opts["gif"] or opts["frames"]):
        frames = list(iter_animation(dsi))
        if opts["frames"]:
            for i, frame in enumerate(frames):
                path = _output_path(out_dir, names["frame_png"].replace("{index}", str(i)))
                save_icon_png(frame.raster, path, scale=opts["scale"])
                outputs.append({"type": "frame_png", "path": str(path), "duration_ticks": frame.duration})
        if opts["gif"] and frames:
            path = _output_path(out_dir, names["icon_gif"])
            save_animation_gif(frames, path, scale=opts["scale"])
            outputs.append(
                {
                    "type": "gif",
                    "path": str(path),
                    "frames": len(frames),
                    "durations_ticks": [f.duration for f in frames],
                }
            )

    return {"gamecode": gamecode, "outputs": outputs}


def cmd_extract(args: argparse.Namespace) -> int:
    raw = _read_rom(args.rom)
    cfg = _load_config(pathlib.Path(args.config)) if args.config else {}
    opts = _resolve_extract_options(args, cfg)
    rom = decode_rom(raw)

    out_dir = pathlib.Path(args.outdir)
    out_dir.mkdir(parents=True, exist_ok=True)
    rec = _export_rom(rom, raw, out_dir, opts)

    report = {
        "rom": args.rom,
        "config": args.config,
        "outdir": str(out_dir),
        "title": rom.header.title.text,
        "gamecode": rec["gamecode"],
        "icon_version": rom.icon.version,
        "outputs": rec["outputs"],
        "count": len(rec["outputs"]),
    }
    out_manifest = out_dir / "manifest.json"
    out_manifest.write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps({"manifest": str(out_manifest), "outputs": len(rec["outputs"])}, indent=2))
    return 0


def cmd_crc_verify(args: argparse.Namespace) -> int:
    raw = _read_rom(args.rom)
    rom = decode_rom(raw)
    checks = verify_checksums(rom.header, rom.icon, raw)
    ok = all(c.get("valid", True) for c in checks.values())
    print(json.dumps({"rom": args.rom, "checks": checks, "valid": ok}, indent=2))
    return 0 if ok else 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Nintendo DS cartridge extraction helper")
    sub = p.add_subparsers(dest="cmd", required=True)

    pri = sub.add_parser("rom-info", help="Report decoded header fields, icon version and banner titles")
    pri.add_argument("--rom", required=True, help="Path to ROM (.nds)")
    pri.add_argument("--json", help="Optional output JSON path")
    pri.set_defaults(func=cmd_rom_info)

    pex = sub.add_parser("extract", help="Export ARM9/ARM7 ELF objects, icon PNG and DSi icon GIF")
    pex.add_argument("--rom", required=True, help="Path to ROM (.nds)")
    pex.add_argument("--outdir", required=True, help="Output folder")
    pex.add_argument("--config", help="Optional config file (.json/.yaml/.yml)")
    pex.add_argument("--no-png", action="store_true", help="Skip the static icon PNG")
    pex.add_argument("--no-gif", action="store_true", help="Skip the DSi animated icon GIF")
    pex.add_argument("--no-elf", action="store_true", help="Skip ARM9/ARM7 ELF export")
    pex.add_argument("--frames", action="store_true", help="Also write each animation frame as PNG")
    pex.add_argument("--scale", type=int, help="Nearest-neighbour upscale factor for images (default: 1)")
    pex.set_defaults(func=cmd_extract)

    pcv = sub.add_parser("crc-verify", help="Verify header, logo, secure area and banner CRC-16 values")
    pcv.add_argument("--rom", required=True, help="Path to ROM (.nds)")
    pcv.set_defaults(func=cmd_crc_verify)

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except NDSDecodeError as e:
        print(json.dumps({"error": type(e).__name__, "message": str(e)}, indent=2), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
