"""
Minimal bitmap helpers for display teardown.

Only the solid-black frame lives here; content bitmaps are produced by
external tooling and arrive already base64-encoded.

Layout of the 1 bpp BMP we emit:
    14 bytes  BITMAPFILEHEADER
    40 bytes  BITMAPINFOHEADER
     8 bytes  palette (index 0 = black, index 1 = white)
     N bytes  pixel rows, bottom-up, each padded to 4 bytes
"""

from __future__ import annotations

import base64
import struct
from functools import lru_cache

from constants import BITMAP_HEIGHT_PX, BITMAP_WIDTH_PX

_FILE_HEADER_BYTES = 14
_INFO_HEADER_BYTES = 40
_PALETTE = bytes((0, 0, 0, 0, 255, 255, 255, 0))


def _row_stride(width: int) -> int:
    return ((width + 31) // 32) * 4


def encode_mono_bmp(width: int, height: int, *, fill_white: bool = False) -> bytes:
    """Encode a single-colour 1 bpp BMP."""
    if width <= 0 or height <= 0:
        raise ValueError("bitmap dimensions must be positive")

    stride = _row_stride(width)
    pixels = (b"\xff" if fill_white else b"\x00") * (stride * height)
    offset = _FILE_HEADER_BYTES + _INFO_HEADER_BYTES + len(_PALETTE)

    file_header = struct.pack("<2sIHHI", b"BM", offset + len(pixels), 0, 0, offset)
    info_header = struct.pack(
        "<IiiHHIIiiII",
        _INFO_HEADER_BYTES,
        width,
        height,
        1,      # planes
        1,      # bits per pixel
        0,      # BI_RGB
        len(pixels),
        2835,   # 72 dpi
        2835,
        2,      # palette entries
        0,
    )
    return file_header + info_header + _PALETTE + pixels


@lru_cache(maxsize=1)
def black_frame_b64() -> str:
    """Base64 full-screen black frame used before clearing a bitmap."""
    return base64.b64encode(encode_mono_bmp(BITMAP_WIDTH_PX, BITMAP_HEIGHT_PX)).decode("ascii")
