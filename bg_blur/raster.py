from __future__ import annotations

import io
import logging

import numpy as np
from PIL import Image

from .config import SUPPORTED_FORMATS
from .errors import UnsupportedFormat

logger = logging.getLogger(__name__)

WIDE_GRAY_MODES = ("I", "I;16", "I;16B", "I;16L")


def ensure_raster(arr: np.ndarray, name: str = "raster") -> np.ndarray:
    """
    Check the canonical raster layout: uint8, (H, W, 4), non-empty.
    """
    if not isinstance(arr, np.ndarray):
        raise TypeError(f"Expected {name} as numpy array, got {type(arr).__name__}")
    if arr.ndim != 3 or arr.shape[2] != 4:
        raise ValueError(f"Expected RGBA {name} (H,W,4), got shape={arr.shape}")
    if arr.shape[0] <= 0 or arr.shape[1] <= 0:
        raise ValueError(f"Invalid {name} size: {arr.shape[:2]}")
    if arr.dtype != np.uint8:
        raise ValueError(f"Expected uint8 {name}, got dtype={arr.dtype}")
    return arr


def normalize(data: bytes) -> np.ndarray:
    """
    Decode JPEG / PNG / WEBP bytes into the canonical raster.

    Output:
      - uint8 ndarray (H, W, 4), straight alpha
      - alpha is 255 everywhere when the source has no transparency
    """
    if not data:
        raise UnsupportedFormat("Empty image payload")

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except Exception as e:  # noqa: BLE001 - Pillow raises a wide range of decode errors
        raise UnsupportedFormat(f"Could not decode image: {e}", cause=e) from e

    fmt = (img.format or "").upper()
    if fmt not in SUPPORTED_FORMATS:
        raise UnsupportedFormat(
            f"Unsupported image format {fmt or 'unknown'!r}; expected one of {sorted(SUPPORTED_FORMATS)}"
        )

    logger.debug("Decoded %s image %sx%s mode=%s", fmt, img.width, img.height, img.mode)
    if img.mode in WIDE_GRAY_MODES:
        # 16-bit grayscale PNG: convert("RGBA") would clip at 255, rescale to 8 bits first.
        wide = np.clip(np.asarray(img).astype(np.int64), 0, 65535)
        img = Image.fromarray((wide >> 8).astype(np.uint8))
    rgba = np.array(img.convert("RGBA"), dtype=np.uint8)
    return np.ascontiguousarray(rgba)


def to_pil(raster: np.ndarray) -> Image.Image:
    ensure_raster(raster)
    return Image.fromarray(raster)


def encode_png(raster: np.ndarray) -> bytes:
    """
    Lossless RGBA PNG; alpha is kept so consumers can decide whether to flatten it.
    """
    buf = io.BytesIO()
    to_pil(raster).save(buf, format="PNG", optimize=False)
    return buf.getvalue()
