from __future__ import annotations

import logging
import os
import secrets
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Literal, Optional, Union

import numpy as np

from .composite import check_same_size
from .config import SCRATCH_PREFIX, get_scratch_dir
from .errors import Cancelled, SegmentationFailed
from .raster import encode_png, ensure_raster

logger = logging.getLogger(__name__)

Source = Union[np.ndarray, str, os.PathLike]


class SegmentationProvider(ABC):
    """
    Black-box foreground extraction backend.

    `source` is either the canonical RGBA raster held in memory, or the path of a
    PNG holding that same raster (used when buffer-mode invocation fails).
    The result must cover the same H x W as the source; accepted layouts:
      - (H,W) or (H,W,1) alpha: bool (True = foreground), float in [0,1],
        or any integer dtype in 0..255 (values outside are clipped)
      - (H,W,4) foreground cutout (its alpha channel is used)
    """

    name = "provider"

    @abstractmethod
    def extract(self, source: Source) -> np.ndarray:
        raise NotImplementedError


@dataclass(frozen=True)
class MaskResult:
    mask: np.ndarray
    path: Literal["buffer", "file"]


def coerce_mask(result) -> np.ndarray:
    """
    Reduce any accepted provider output to a uint8 (H,W) alpha mask.
    """
    if result is None:
        raise RuntimeError("Background removal returned empty result")
    m = np.asarray(result)
    if m.ndim == 3 and m.shape[2] == 4:
        m = m[..., 3]
    elif m.ndim == 3 and m.shape[2] == 1:
        m = m[..., 0]
    if m.ndim != 2 or m.size == 0:
        raise RuntimeError(f"Unexpected mask shape from segmentation backend: {m.shape}")

    if m.dtype == np.bool_:
        return m.astype(np.uint8) * 255
    if m.dtype == np.uint8:
        return np.ascontiguousarray(m)
    if np.issubdtype(m.dtype, np.floating):
        if np.isnan(m).any():
            raise RuntimeError("NaNs detected in segmentation mask.")
        return np.rint(np.clip(m, 0.0, 1.0) * 255.0).astype(np.uint8)
    return np.clip(m, 0, 255).astype(np.uint8)


@contextmanager
def scratch_png(raster: np.ndarray, scratch_dir: Optional[str] = None) -> Iterator[Path]:
    """
    Write the raster to a uniquely named PNG and remove it on exit, whatever the exit path.

    Names combine a nanosecond timestamp with a random suffix; exclusive create
    makes a collision an error instead of a silent overwrite.
    """
    d = Path(scratch_dir or get_scratch_dir())
    path = d / f"{SCRATCH_PREFIX}{time.time_ns()}_{secrets.token_hex(4)}.png"
    try:
        with open(path, "xb") as fp:
            fp.write(encode_png(raster))
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove scratch file %s: %s", path, e)


def check_cancel(cancel: Optional[threading.Event], stage: str) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"Cancelled before {stage}", stage=stage)


def extract_foreground_mask(
    raster: np.ndarray,
    provider: SegmentationProvider,
    *,
    scratch_dir: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
) -> MaskResult:
    """
    Two-tier invocation:
      1) provider.extract(raster) on the in-memory raster
      2) only if (1) raised: provider.extract(path) on a scratch PNG copy

    If both fail, SegmentationFailed carries the first error as its cause.
    """
    ensure_raster(raster)
    check_cancel(cancel, "segment")

    try:
        mask = coerce_mask(provider.extract(raster))
        path: Literal["buffer", "file"] = "buffer"
        logger.info("Foreground extracted in buffer mode (%s)", provider.name)
    except Exception as buffer_error:  # noqa: BLE001 - any buffer failure triggers the file path
        logger.warning("Buffer-mode segmentation failed (%s): %s; retrying via file", provider.name, buffer_error)
        check_cancel(cancel, "segment")
        try:
            with scratch_png(raster, scratch_dir) as p:
                mask = coerce_mask(provider.extract(str(p)))
        except Exception as file_error:  # noqa: BLE001
            logger.error("File-mode segmentation also failed (%s): %s", provider.name, file_error, exc_info=True)
            raise SegmentationFailed(
                f"Background removal failed: {buffer_error}",
                cause=buffer_error,
                fallback_error=file_error,
            ) from buffer_error
        path = "file"
        logger.info("Foreground extracted in file mode (%s)", provider.name)

    # Outside the fallback block: a wrong-sized mask is never retried.
    check_same_size("segment", raster=raster, mask=mask)
    return MaskResult(mask=mask, path=path)
