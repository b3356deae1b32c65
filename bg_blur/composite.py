from __future__ import annotations

import numpy as np

from .blur import premultiply, unpremultiply
from .errors import DimensionMismatch
from .raster import ensure_raster


def ensure_mask(mask: np.ndarray) -> np.ndarray:
    if not isinstance(mask, np.ndarray) or mask.ndim != 2:
        shape = getattr(mask, "shape", None)
        raise ValueError(f"Expected 2D mask (H,W), got shape={shape}")
    if mask.dtype != np.uint8:
        raise ValueError(f"Expected uint8 mask, got dtype={mask.dtype}")
    return mask


def check_same_size(stage: str = "composite", **arrays: np.ndarray) -> None:
    """
    Raise DimensionMismatch unless every array shares the same (H, W).
    """
    sizes = {name: tuple(a.shape[:2]) for name, a in arrays.items()}
    if len(set(sizes.values())) > 1:
        detail = ", ".join(f"{name}={h}x{w}" for name, (h, w) in sizes.items())
        raise DimensionMismatch(f"Inputs disagree on size (HxW): {detail}", stage=stage)


def extract_foreground(canonical_pm: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """
    Porter-Duff dest-in: keep the canonical pixel scaled by mask coverage.

    Both operands and the result are premultiplied float32, so scaling all four
    channels by the coverage is exact; mask 0 yields (0,0,0,0).
    """
    coverage = mask.astype(np.float32)[..., None] / 255.0
    return canonical_pm * coverage


def overlay(foreground_pm: np.ndarray, background_pm: np.ndarray) -> np.ndarray:
    """
    Porter-Duff source-over on premultiplied float32:
      out = fg + bg * (1 - fg.alpha)
    """
    return foreground_pm + background_pm * (1.0 - foreground_pm[..., 3:4])


def composite(blurred: np.ndarray, canonical: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """
    Paint the mask-extracted sharp subject over the blurred full frame.

    Inputs:
      - blurred, canonical: uint8 RGBA (H,W,4), straight alpha
      - mask: uint8 (H,W), 255 = foreground
    Output:
      - uint8 RGBA (H,W,4), straight alpha
    """
    ensure_raster(blurred, "blurred raster")
    ensure_raster(canonical, "canonical raster")
    ensure_mask(mask)
    check_same_size(blurred=blurred, canonical=canonical, mask=mask)

    fg = extract_foreground(premultiply(canonical), mask)
    out = overlay(fg, premultiply(blurred))
    return unpremultiply(out)
