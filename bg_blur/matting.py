"""
Model-space plumbing for the local matting backend.

  raster/path -> RGB -> letterboxed square tensor -> logits -> matte (H,W) in [0,1]

The square input is aspect-safe: the image is scaled so its longest side fills
MATTE_INPUT_SIZE and the remainder is padded. `MatteMeta` records how to undo it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple, Union

import cv2
import numpy as np
import torch

from .config import (
    EDGE_BLUR_RADIUS,
    ERODE_KERNEL_SIZE,
    IMAGENET_MEAN,
    IMAGENET_STD,
    MATTE_INPUT_SIZE,
    MATTE_PAD_COLOR,
    MATTE_THRESHOLD,
)
from .model import forward_model


@dataclass(frozen=True)
class MatteMeta:
    orig_h: int
    orig_w: int
    resized_h: int
    resized_w: int
    x_offset: int
    y_offset: int


def source_to_rgb(source: Union[np.ndarray, str, os.PathLike]) -> np.ndarray:
    """
    RGB uint8 (H,W,3) from either an RGBA raster or an image path.
    """
    if isinstance(source, np.ndarray):
        if source.ndim != 3 or source.shape[2] not in (3, 4):
            raise ValueError(f"Expected RGB/RGBA array, got shape={source.shape}")
        return np.ascontiguousarray(source[..., :3], dtype=np.uint8)

    bgr = cv2.imread(os.fspath(source), cv2.IMREAD_COLOR)
    if bgr is None:
        raise FileNotFoundError(f"Could not read image: {source}")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def letterbox(rgb: np.ndarray, size: int = MATTE_INPUT_SIZE) -> Tuple[np.ndarray, MatteMeta]:
    h, w = rgb.shape[:2]
    if h <= 0 or w <= 0:
        raise ValueError(f"Invalid image size: {(h, w)}")

    # Always scale the long side to `size`, upscaling small inputs too; SOD models expect a fixed scale.
    scale = float(size) / float(max(h, w))
    rw = max(1, int(round(w * scale)))
    rh = max(1, int(round(h * scale)))
    interp = cv2.INTER_AREA if scale < 1 else cv2.INTER_CUBIC
    resized = cv2.resize(rgb, (rw, rh), interpolation=interp)

    canvas = np.full((size, size, 3), MATTE_PAD_COLOR, dtype=np.uint8)
    x0 = (size - rw) // 2
    y0 = (size - rh) // 2
    canvas[y0 : y0 + rh, x0 : x0 + rw] = resized
    return canvas, MatteMeta(orig_h=h, orig_w=w, resized_h=rh, resized_w=rw, x_offset=x0, y_offset=y0)


def to_model_tensor(square_rgb: np.ndarray) -> torch.Tensor:
    """uint8 (S,S,3) -> ImageNet-normalized float32 tensor (1,3,S,S)."""
    x = square_rgb.astype(np.float32) / 255.0
    mean = np.asarray(IMAGENET_MEAN, dtype=np.float32).reshape(1, 1, 3)
    std = np.asarray(IMAGENET_STD, dtype=np.float32).reshape(1, 1, 3)
    x = np.transpose((x - mean) / std, (2, 0, 1))
    return torch.from_numpy(np.ascontiguousarray(x)).unsqueeze(0)


def _pick_logits(y):
    """
    Segmentation models return a tensor, a list/tuple of stage outputs (final last),
    or a dict / ModelOutput. Take the most plausible logits tensor.
    """
    if isinstance(y, torch.Tensor):
        return y
    if hasattr(y, "logits") and isinstance(getattr(y, "logits"), torch.Tensor):
        return y.logits
    if isinstance(y, (list, tuple)):
        tensors = [t for t in y if isinstance(t, torch.Tensor)]
        if tensors:
            return tensors[-1]
    if isinstance(y, dict):
        for k in ("logits", "pred", "alpha", "mask"):
            if isinstance(y.get(k), torch.Tensor):
                return y[k]
        tensors = [t for t in y.values() if isinstance(t, torch.Tensor)]
        if tensors:
            return tensors[0]
    raise RuntimeError(f"Model output is not a tensor: {type(y)}")


def predict_matte(model: torch.nn.Module, x: torch.Tensor, device: torch.device) -> np.ndarray:
    """
    Forward pass, sigmoid, back to numpy: float32 (S,S) in [0,1].
    """
    if x.ndim != 4 or x.shape[0] != 1:
        raise ValueError(f"Expected input tensor (1,3,H,W), got {tuple(x.shape)}")
    size = int(x.shape[-1])

    y = _pick_logits(forward_model(model, x.float().to(device)))
    while y.ndim > 2:
        y = y[0]
    if tuple(y.shape) != (size, size):
        y = torch.nn.functional.interpolate(
            y[None, None], size=(size, size), mode="bilinear", align_corners=False
        )[0, 0]

    p = torch.sigmoid(y.float())
    if torch.isnan(p).any():
        raise RuntimeError("NaNs detected in predicted matte.")
    return np.clip(p.detach().to("cpu").numpy().astype(np.float32), 0.0, 1.0)


def unletterbox(matte_sq: np.ndarray, meta: MatteMeta) -> np.ndarray:
    """Crop the padding away and resize to the original (H,W)."""
    if matte_sq.ndim != 2:
        raise ValueError(f"Expected 2D matte, got shape={matte_sq.shape}")
    crop = matte_sq[meta.y_offset : meta.y_offset + meta.resized_h, meta.x_offset : meta.x_offset + meta.resized_w]
    if crop.size == 0:
        raise ValueError("Matte crop is empty; check letterbox meta.")
    out = cv2.resize(crop.astype(np.float32), (meta.orig_w, meta.orig_h), interpolation=cv2.INTER_LINEAR)
    return np.clip(out, 0.0, 1.0)


def keep_largest_component(matte: np.ndarray, threshold: float = MATTE_THRESHOLD) -> np.ndarray:
    """Zero every blob except the largest one above threshold (dust removal)."""
    binary = (matte > float(threshold)).astype(np.uint8)
    if not binary.any():
        return np.zeros_like(matte, dtype=np.float32)
    n, labels, stats, _ = cv2.connectedComponentsWithStats(binary, connectivity=8)
    if n <= 2:
        return matte.astype(np.float32)
    biggest = 1 + int(np.argmax(stats[1:, cv2.CC_STAT_AREA]))
    return (matte * (labels == biggest)).astype(np.float32)


def erode(matte: np.ndarray, kernel_size: int = ERODE_KERNEL_SIZE) -> np.ndarray:
    """Shrink the matte slightly to drop thin halos; even sizes are bumped to odd."""
    k = int(kernel_size)
    if k <= 0:
        return matte.astype(np.float32)
    k |= 1
    m8 = np.rint(np.clip(matte, 0.0, 1.0) * 255.0).astype(np.uint8)
    return cv2.erode(m8, np.ones((k, k), np.uint8)).astype(np.float32) / 255.0


def smooth_edges(matte: np.ndarray, radius: int = EDGE_BLUR_RADIUS, threshold: float = MATTE_THRESHOLD) -> np.ndarray:
    """
    Soften the matte only along its boundary band; the interior stays untouched.
    """
    if radius <= 0:
        return matte.astype(np.float32)
    m = np.clip(matte.astype(np.float32), 0.0, 1.0)
    edges = cv2.bitwise_or(
        cv2.Canny(np.rint(m * 255.0).astype(np.uint8), 60, 120),
        cv2.Canny((m > float(threshold)).astype(np.uint8) * 255, 60, 120),
    )
    k = 2 * int(radius) + 1
    band = cv2.dilate(edges, cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (k, k))) > 0
    soft = cv2.GaussianBlur(m, (0, 0), sigmaX=max(0.5, float(radius)))
    return np.clip(np.where(band, soft, m), 0.0, 1.0).astype(np.float32)


def refine_matte(matte_sq: np.ndarray, meta: MatteMeta) -> np.ndarray:
    """
    Model-space matte -> original-resolution matte:
    unletterbox, largest component, erosion, edge smoothing.
    """
    m = unletterbox(matte_sq, meta)
    m = keep_largest_component(m)
    m = erode(m)
    return smooth_edges(m)
