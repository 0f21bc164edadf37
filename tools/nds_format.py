#!/usr/bin/env python3
"""
Nintendo DS cartridge image (.nds) structure decoding.

Covers:
- little-endian cursor reads with explicit bounds errors,
- the fixed 0x180-byte cartridge header,
- the icon/banner record, including the DSi animated icon block,
- CRC-16 checksum verification of header, logo, secure area and banner.

Layouts follow GBATEK and the DSiBrew cartridge header notes.
"""

from __future__ import annotations

import dataclasses
import struct
from typing import Dict, List, Optional, Tuple

HEADER_SIZE = 0x180
ICON_COMMON_SIZE = 0x1240
DSI_ICON_SIZE = 0x1180
DSI_ICON_VERSION = 259

ICON_BITMAP_SIZE = 0x200
ICON_PALETTE_COLORS = 16
ICON_TITLE_UNITS = 128
DSI_FRAME_COUNT = 8
DSI_SEQUENCE_LENGTH = 64

TITLE_LANGUAGES: Tuple[str, ...] = ("jp", "en", "fr", "de", "it", "es", "zh", "kr")


class NDSDecodeError(ValueError):
    pass


class UnexpectedEndOfData(NDSDecodeError):
    def __init__(self, offset: int, requested_length: int, available: Optional[int] = None):
        self.offset = offset
        self.requested_length = requested_length
        self.available = available
        msg = f"Unexpected end of data: {requested_length} byte(s) requested @0x{offset:X}"
        if available is not None:
            msg += f" (buffer is 0x{available:X} bytes)"
        super().__init__(msg)


class InvalidOffset(NDSDecodeError):
    def __init__(self, field: str, offset: int, size: int, limit: int):
        self.field = field
        self.offset = offset
        self.size = size
        self.limit = limit
        super().__init__(
            f"Header field '{field}' points outside the image: "
            f"0x{offset:X}+0x{size:X} > 0x{limit:X}"
        )


class ByteReader:
    """Little-endian cursor over an in-memory buffer."""

    def __init__(self, data: bytes, pos: int = 0):
        self.data = data
        self.pos = pos

    def tell(self) -> int:
        return self.pos

    def remaining(self) -> int:
        return max(0, len(self.data) - self.pos)

    def seek(self, pos: int) -> None:
        if pos < 0 or pos > len(self.data):
            raise UnexpectedEndOfData(pos, 0, len(self.data))
        self.pos = pos

    def _take(self, n: int) -> int:
        off = self.pos
        if n < 0 or off + n > len(self.data):
            raise UnexpectedEndOfData(off, n, len(self.data))
        self.pos = off + n
        return off

    def _unpack(self, fmt: str, width: int) -> int:
        off = self._take(width)
        return struct.unpack_from(fmt, self.data, off)[0]

    def u8(self) -> int:
        return self._unpack("<B", 1)

    def u16(self) -> int:
        return self._unpack("<H", 2)

    def u32(self) -> int:
        return self._unpack("<I", 4)

    def u64(self) -> int:
        return self._unpack("<Q", 8)

    def read(self, n: int) -> bytes:
        off = self._take(n)
        return bytes(self.data[off : off + n])

    def u16_array(self, count: int) -> Tuple[int, ...]:
        off = self._take(count * 2)
        return struct.unpack_from(f"<{count}H", self.data, off)


@dataclasses.dataclass(frozen=True)
class BoundedString:
    raw: bytes

    @classmethod
    def read(cls, reader: ByteReader, length: int) -> "BoundedString":
        return cls(reader.read(length))

    @property
    def text(self) -> str:
        return bytes(b for b in self.raw if b != 0).decode("utf-8", errors="replace")

    def __str__(self) -> str:
        return self.text


@dataclasses.dataclass(frozen=True)
class BoundedUTF16String:
    units: Tuple[int, ...]

    @classmethod
    def read(cls, reader: ByteReader) -> "BoundedUTF16String":
        return cls(reader.u16_array(ICON_TITLE_UNITS))

    @property
    def text(self) -> str:
        kept = [u for u in self.units if u != 0]
        return struct.pack(f"<{len(kept)}H", *kept).decode("utf-16-le", errors="replace")

    def __str__(self) -> str:
        return self.text


@dataclasses.dataclass(frozen=True)
class ExecutableDescriptor:
    offset: int
    entry_address: int
    load_address: int
    size: int

    @classmethod
    def read(cls, reader: ByteReader) -> "ExecutableDescriptor":
        return cls(reader.u32(), reader.u32(), reader.u32(), reader.u32())

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclasses.dataclass(frozen=True)
class NDSHeader:
    title: BoundedString
    gamecode: BoundedString
    makercode: int
    unitcode: int
    encryption_seed: int
    device_capacity: int
    reserved_1: bytes
    gamerevision: int
    romversion: int
    autostart: int
    arm9: ExecutableDescriptor
    arm7: ExecutableDescriptor
    fnt_offset: int
    fnt_size: int
    fat_offset: int
    fat_size: int
    arm9_overlay_offset: int
    arm9_overlay_size: int
    arm7_overlay_offset: int
    arm7_overlay_size: int
    port_settings_normal: int
    port_settings_key1: int
    icon_banner_offset: int
    secure_area_crc: int
    secure_transfer_timeout: int
    arm9_autoload: int
    arm7_autoload: int
    secure_disable: int
    ntr_region_size: int
    header_size: int
    reserved_2: bytes
    logo: bytes
    logo_crc: int
    header_crc: int
    debugger_reserved: bytes

    def pack(self) -> bytes:
        out = bytearray()
        out += self.title.raw
        out += self.gamecode.raw
        out += struct.pack("<HBBB", self.makercode, self.unitcode, self.encryption_seed, self.device_capacity)
        out += self.reserved_1
        out += struct.pack("<HBB", self.gamerevision, self.romversion, self.autostart)
        for exe in (self.arm9, self.arm7):
            out += struct.pack("<4I", exe.offset, exe.entry_address, exe.load_address, exe.size)
        out += struct.pack(
            "<11I",
            self.fnt_offset,
            self.fnt_size,
            self.fat_offset,
            self.fat_size,
            self.arm9_overlay_offset,
            self.arm9_overlay_size,
            self.arm7_overlay_offset,
            self.arm7_overlay_size,
            self.port_settings_normal,
            self.port_settings_key1,
            self.icon_banner_offset,
        )
        out += struct.pack("<HH", self.secure_area_crc, self.secure_transfer_timeout)
        out += struct.pack("<II", self.arm9_autoload, self.arm7_autoload)
        out += struct.pack("<QII", self.secure_disable, self.ntr_region_size, self.header_size)
        out += self.reserved_2
        out += self.logo
        out += struct.pack("<HH", self.logo_crc, self.header_crc)
        out += self.debugger_reserved
        if len(out) != HEADER_SIZE:
            raise ValueError(f"Header packed to 0x{len(out):X} bytes, expected 0x{HEADER_SIZE:X}")
        return bytes(out)

    def regions(self) -> List[Tuple[str, int, int]]:
        return [
            ("arm9", self.arm9.offset, self.arm9.size),
            ("arm7", self.arm7.offset, self.arm7.size),
            ("fnt", self.fnt_offset, self.fnt_size),
            ("fat", self.fat_offset, self.fat_size),
            ("arm9_overlay", self.arm9_overlay_offset, self.arm9_overlay_size),
            ("arm7_overlay", self.arm7_overlay_offset, self.arm7_overlay_size),
        ]


def decode_header(data: bytes) -> NDSHeader:
    if len(data) < HEADER_SIZE:
        raise UnexpectedEndOfData(0, HEADER_SIZE, len(data))
    r = ByteReader(data)
    return NDSHeader(
        title=BoundedString.read(r, 12),
        gamecode=BoundedString.read(r, 4),
        makercode=r.u16(),
        unitcode=r.u8(),
        encryption_seed=r.u8(),
        device_capacity=r.u8(),
        reserved_1=r.read(7),
        gamerevision=r.u16(),
        romversion=r.u8(),
        autostart=r.u8(),
        arm9=ExecutableDescriptor.read(r),
        arm7=ExecutableDescriptor.read(r),
        fnt_offset=r.u32(),
        fnt_size=r.u32(),
        fat_offset=r.u32(),
        fat_size=r.u32(),
        arm9_overlay_offset=r.u32(),
        arm9_overlay_size=r.u32(),
        arm7_overlay_offset=r.u32(),
        arm7_overlay_size=r.u32(),
        port_settings_normal=r.u32(),
        port_settings_key1=r.u32(),
        icon_banner_offset=r.u32(),
        secure_area_crc=r.u16(),
        secure_transfer_timeout=r.u16(),
        arm9_autoload=r.u32(),
        arm7_autoload=r.u32(),
        secure_disable=r.u64(),
        ntr_region_size=r.u32(),
        header_size=r.u32(),
        reserved_2=r.read(56),
        logo=r.read(156),
        logo_crc=r.u16(),
        header_crc=r.u16(),
        debugger_reserved=r.read(32),
    )


def check_header_bounds(header: NDSHeader, image_size: int) -> None:
    for name, off, size in header.regions():
        if off + size > image_size:
            raise InvalidOffset(name, off, size, image_size)
    # Offset 0 would alias the cartridge header itself.
    if header.icon_banner_offset == 0 or header.icon_banner_offset >= image_size:
        raise InvalidOffset("icon_banner", header.icon_banner_offset, 0, image_size)


@dataclasses.dataclass(frozen=True)
class IconPalette:
    colors: Tuple[int, ...]

    @classmethod
    def read(cls, reader: ByteReader) -> "IconPalette":
        return cls(reader.u16_array(ICON_PALETTE_COLORS))


@dataclasses.dataclass(frozen=True)
class DSiIcon:
    frames: Tuple[bytes, ...]
    frame_palettes: Tuple[IconPalette, ...]
    sequence: Tuple[int, ...]

    @classmethod
    def read(cls, reader: ByteReader) -> "DSiIcon":
        frames = tuple(reader.read(ICON_BITMAP_SIZE) for _ in range(DSI_FRAME_COUNT))
        palettes = tuple(IconPalette.read(reader) for _ in range(DSI_FRAME_COUNT))
        return cls(frames, palettes, reader.u16_array(DSI_SEQUENCE_LENGTH))


@dataclasses.dataclass(frozen=True)
class NDSIcon:
    version: int
    crc: Tuple[int, int, int, int]
    reserved: bytes
    bitmap: bytes
    palette: IconPalette
    titles: Tuple[BoundedUTF16String, ...]
    zerofilled: bytes
    dsi_icon: Optional[DSiIcon]

    @property
    def has_dsi_icon(self) -> bool:
        return self.dsi_icon is not None

    def title(self, lang: str) -> str:
        return self.titles[TITLE_LANGUAGES.index(lang)].text

    def title_map(self) -> Dict[str, str]:
        return {lang: t.text for lang, t in zip(TITLE_LANGUAGES, self.titles)}


def decode_icon_banner(data: bytes, offset: int) -> NDSIcon:
    r = ByteReader(data)
    r.seek(offset)
    version = r.u16()
    crc = (r.u16(), r.u16(), r.u16(), r.u16())
    reserved = r.read(22)
    bitmap = r.read(ICON_BITMAP_SIZE)
    palette = IconPalette.read(r)
    titles = tuple(BoundedUTF16String.read(r) for _ in TITLE_LANGUAGES)
    zerofilled = r.read(2048)
    dsi_icon = DSiIcon.read(r) if version >= DSI_ICON_VERSION else None
    return NDSIcon(
        version=version,
        crc=crc,
        reserved=reserved,
        bitmap=bitmap,
        palette=palette,
        titles=titles,
        zerofilled=zerofilled,
        dsi_icon=dsi_icon,
    )


@dataclasses.dataclass(frozen=True)
class NDSRom:
    header: NDSHeader
    icon: NDSIcon
    size: int


def decode_rom(data: bytes) -> NDSRom:
    header = decode_header(data)
    check_header_bounds(header, len(data))
    icon = decode_icon_banner(data, header.icon_banner_offset)
    return NDSRom(header=header, icon=icon, size=len(data))


def _build_crc16_table() -> List[int]:
    table: List[int] = []
    for i in range(256):
        c = i
        for _ in range(8):
            c = (c >> 1) ^ 0xA001 if (c & 1) else c >> 1
        table.append(c)
    return table


_CRC16_TABLE = _build_crc16_table()


def crc16(data: bytes, init: int = 0xFFFF) -> int:
    crc = init & 0xFFFF
    for b in data:
        crc = (crc >> 8) ^ _CRC16_TABLE[(crc ^ b) & 0xFF]
    return crc


# (name, start, end, minimum banner version), relative to the banner.
_ICON_CRC_RANGES: Tuple[Tuple[str, int, int, int], ...] = (
    ("icon_crc1", 0x0020, 0x0840, 0x0001),
    ("icon_crc2", 0x0020, 0x0940, 0x0002),
    ("icon_crc3", 0x0020, 0x0A40, 0x0003),
    ("icon_crc4", ICON_COMMON_SIZE, ICON_COMMON_SIZE + DSI_ICON_SIZE, DSI_ICON_VERSION),
)


def _crc_entry(stored: int, block: Optional[bytes]) -> Dict[str, object]:
    if block is None:
        return {"stored": f"0x{stored:04X}", "skipped": True}
    computed = crc16(block)
    return {
        "stored": f"0x{stored:04X}",
        "computed": f"0x{computed:04X}",
        "valid": computed == stored,
    }


def verify_checksums(header: NDSHeader, icon: Optional[NDSIcon], data: bytes) -> Dict[str, Dict[str, object]]:
    report: Dict[str, Dict[str, object]] = {
        "header_crc": _crc_entry(header.header_crc, data[0x000:0x15E]),
        "logo_crc": _crc_entry(header.logo_crc, data[0x0C0:0x15C]),
        "secure_area_crc": _crc_entry(
            header.secure_area_crc, data[0x4000:0x8000] if len(data) >= 0x8000 else None
        ),
    }
    if icon is None:
        return report
    base = header.icon_banner_offset
    for i, (name, start, end, min_version) in enumerate(_ICON_CRC_RANGES):
        block: Optional[bytes] = None
        if icon.version >= min_version and base + end <= len(data):
            block = data[base + start : base + end]
        report[name] = _crc_entry(icon.crc[i], block)
    return report
