#!/usr/bin/env python3
"""
DS icon rendering: 4bpp tiled bitmaps -> 32x32 RGBA rasters, DSi icon
animation playback, and PNG/GIF export.
"""

from __future__ import annotations

import dataclasses
import pathlib
import re
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from nds_format import DSiIcon, IconPalette

ICON_SIZE = 32
TILE_SIZE = 8
TILES_PER_ROW = ICON_SIZE // TILE_SIZE
TICKS_PER_SECOND = 60

Rgba = Tuple[int, int, int, int]
Blit = Callable[[int, int, Rgba], None]

TRANSPARENT: Rgba = (0, 0, 0, 0)


def conv(channel: int) -> int:
    # 5-bit channel -> 8-bit channel
    return int(round((channel / 31.0) * 255.0))


_CHANNEL_5_TO_8 = [conv(c) for c in range(32)]


def bgr555_to_rgba8888(v: int) -> Rgba:
    r = _CHANNEL_5_TO_8[v & 0x1F]
    g = _CHANNEL_5_TO_8[(v >> 5) & 0x1F]
    b = _CHANNEL_5_TO_8[(v >> 10) & 0x1F]
    return r, g, b, 255


@dataclasses.dataclass(frozen=True)
class IconAnimation:
    flip_vert: bool = False
    flip_horiz: bool = False
    palette: int = 0
    bitmap: int = 0
    duration: int = 0

    @classmethod
    def from_word(cls, seq: int) -> "IconAnimation":
        return cls(
            flip_vert=bool((seq >> 15) & 1),
            flip_horiz=bool((seq >> 14) & 1),
            palette=(seq >> 11) & 7,
            bitmap=(seq >> 8) & 7,
            duration=seq & 0xFF,
        )


def _iter_nibbles(bitmap: bytes) -> Iterator[int]:
    for byte in bitmap:
        yield byte & 0xF
        yield byte >> 4


def blit_icon_frame(
    bitmap: bytes,
    palette: IconPalette,
    blit: Blit,
    anim: IconAnimation = IconAnimation(),
) -> None:
    """
    Decode a 512-byte 4bpp icon bitmap and hand every pixel to ``blit``.

    The bitmap is a 4x4 grid of 8x8 tiles stored row-major; within a tile the
    pixels run in raster order, two per byte, low nibble first. Flips only
    mirror the destination coordinate, the stream order is unchanged.
    """
    colors = [TRANSPARENT] + [bgr555_to_rgba8888(c) for c in palette.colors[1:]]
    nibbles = _iter_nibbles(bitmap)
    for ty in range(TILES_PER_ROW):
        for tx in range(TILES_PER_ROW):
            for y in range(TILE_SIZE):
                for x in range(TILE_SIZE):
                    idx = next(nibbles)
                    px = tx * TILE_SIZE + x
                    py = ty * TILE_SIZE + y
                    blit(
                        (ICON_SIZE - 1 - px) if anim.flip_horiz else px,
                        (ICON_SIZE - 1 - py) if anim.flip_vert else py,
                        colors[idx],
                    )


def new_raster() -> np.ndarray:
    return np.zeros((ICON_SIZE, ICON_SIZE, 4), dtype=np.uint8)


def render_icon(bitmap: bytes, palette: IconPalette, anim: IconAnimation = IconAnimation()) -> np.ndarray:
    raster = new_raster()

    def _put(x: int, y: int, rgba: Rgba) -> None:
        raster[y, x] = rgba

    blit_icon_frame(bitmap, palette, _put, anim)
    return raster


@dataclasses.dataclass(frozen=True)
class AnimationFrame:
    raster: np.ndarray
    duration: int
    anim: IconAnimation

    @property
    def duration_ms(self) -> int:
        return int((self.duration / TICKS_PER_SECOND) * 1000)


def iter_animation(dsi: DSiIcon) -> Iterator[AnimationFrame]:
    for seq in dsi.sequence:
        if seq == 0:
            return
        anim = IconAnimation.from_word(seq)
        raster = render_icon(dsi.frames[anim.bitmap], dsi.frame_palettes[anim.palette], anim)
        yield AnimationFrame(raster=raster, duration=anim.duration, anim=anim)


def _sanitize_token(name: str, fallback: str = "unknown") -> str:
    token = re.sub(r"[^A-Za-z0-9._-]+", "_", name.strip())
    token = token.strip("._-")
    return token if token else fallback


DEFAULT_NAMES: Dict[str, str] = {
    "icon_png": "icon_{gamecode}.png",
    "icon_gif": "dsi_icon_{gamecode}.gif",
    "frame_png": "dsi_frame_{index}_{gamecode}.png",
    "arm9_elf": "out9.elf",
    "arm7_elf": "out7.elf",
}


def output_names(gamecode: str, templates: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    code = _sanitize_token(gamecode)
    merged = dict(DEFAULT_NAMES)
    merged.update(templates or {})
    # frame_png keeps its {index} placeholder for per-frame formatting.
    return {k: v.replace("{gamecode}", code) for k, v in merged.items()}


def _to_image(raster: np.ndarray, scale: int = 1) -> Image.Image:
    img = Image.fromarray(raster)
    if scale > 1:
        img = img.resize((raster.shape[1] * scale, raster.shape[0] * scale), Image.NEAREST)
    return img


def save_icon_png(raster: np.ndarray, out_path: pathlib.Path, scale: int = 1) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    _to_image(raster, scale).save(out_path, format="PNG")


def save_animation_gif(frames: Sequence[AnimationFrame], out_path: pathlib.Path, scale: int = 1) -> int:
    if not frames:
        raise ValueError("Animation has no frames to encode")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    images: List[Image.Image] = [_to_image(f.raster, scale) for f in frames]
    images[0].save(
        out_path,
        format="GIF",
        save_all=True,
        append_images=images[1:],
        duration=[f.duration_ms for f in frames],
        loop=0,
        disposal=2,
    )
    return len(images)
