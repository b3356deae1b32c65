from __future__ import annotations

import math
from numbers import Real

import cv2
import numpy as np

from .errors import InvalidParameter
from .raster import ensure_raster


def validate_radius(radius) -> float:
    """
    Radius is the Gaussian sigma in pixels; must be a finite number > 0.
    """
    if isinstance(radius, bool) or not isinstance(radius, Real):
        raise InvalidParameter(f"Blur radius must be a number, got {type(radius).__name__}")
    r = float(radius)
    if not math.isfinite(r) or r <= 0.0:
        raise InvalidParameter(f"Blur radius must be > 0, got {radius!r}")
    return r


def premultiply(raster: np.ndarray) -> np.ndarray:
    """uint8 straight RGBA -> float32 premultiplied RGBA in [0,1]."""
    x = raster.astype(np.float32) / 255.0
    x[..., :3] *= x[..., 3:4]
    return x


def unpremultiply(x: np.ndarray) -> np.ndarray:
    """float32 premultiplied RGBA in [0,1] -> uint8 straight RGBA. RGB is 0 where alpha is 0."""
    alpha = np.clip(x[..., 3:4], 0.0, 1.0)
    rgb = np.divide(x[..., :3], alpha, out=np.zeros_like(x[..., :3]), where=alpha > 0.0)
    out = np.concatenate([np.clip(rgb, 0.0, 1.0), alpha], axis=-1)
    return np.rint(out * 255.0).astype(np.uint8)


def blur(raster: np.ndarray, radius) -> np.ndarray:
    """
    Separable Gaussian blur over all four channels (alpha included).

    Colour is blurred premultiplied so transparent regions do not bleed their
    RGB into neighbours. Edges replicate the border pixel.
    """
    sigma = validate_radius(radius)
    ensure_raster(raster)

    pm = premultiply(raster)
    # ksize (0, 0): OpenCV derives the kernel extent from sigma; works for sigma > image size.
    blurred = cv2.GaussianBlur(pm, (0, 0), sigmaX=sigma, sigmaY=sigma, borderType=cv2.BORDER_REPLICATE)
    return unpremultiply(blurred)
