from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass
from typing import Optional

from .blur import blur, validate_radius
from .composite import composite
from .contracts import CompositeResult
from .raster import encode_png, normalize
from .segmenter import SegmentationProvider, check_cancel, extract_foreground_mask

logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass(frozen=True)
class StageTimings:
    normalize_s: float
    segment_s: float
    blur_s: float
    composite_s: float
    encode_s: float
    total_s: float


def resolve_blur_radius(raw, default: int) -> int:
    """
    Call-site helper: take the leading integer of `raw` ("12px" -> 12, "1e3" -> 1, 12.9 -> 12).
    None, "", no leading digits or 0 -> `default`.
    Negative values pass through so the pipeline rejects them.
    """
    if raw is None:
        return default
    m = _LEADING_INT.match(str(raw))
    if m is None:
        return default
    return int(m.group(1)) or default


def blur_background(
    data: bytes,
    blur_radius,
    provider: SegmentationProvider,
    *,
    scratch_dir: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
) -> CompositeResult:
    """
    Linear pipeline, no partial results:
      1) Normalize bytes -> RGBA raster
      2) Foreground mask (buffer mode, then file mode)
      3) Blur the full frame
      4) Composite sharp subject over the blurred frame
      5) Encode PNG
    """
    radius = validate_radius(blur_radius)
    t0 = time.perf_counter()

    check_cancel(cancel, "normalize")
    raster = normalize(data)
    t1 = time.perf_counter()
    h, w = raster.shape[:2]
    logger.info("Removing background (%sx%s)...", w, h)

    mask_result = extract_foreground_mask(raster, provider, scratch_dir=scratch_dir, cancel=cancel)
    t2 = time.perf_counter()

    check_cancel(cancel, "blur")
    logger.info("Blurring background (radius=%s)...", radius)
    blurred = blur(raster, radius)
    t3 = time.perf_counter()

    check_cancel(cancel, "composite")
    logger.info("Compositing final image...")
    final = composite(blurred, raster, mask_result.mask)
    t4 = time.perf_counter()

    png = encode_png(final)
    t5 = time.perf_counter()

    timings = StageTimings(
        normalize_s=t1 - t0,
        segment_s=t2 - t1,
        blur_s=t3 - t2,
        composite_s=t4 - t3,
        encode_s=t5 - t4,
        total_s=t5 - t0,
    )
    logger.debug("Stage timings: %s", timings)
    return CompositeResult(
        image=png,
        size=len(png),
        width=w,
        height=h,
        segmentation_path=mask_result.path,
        timings=asdict(timings),
    )


async def blur_background_async(
    data: bytes,
    blur_radius,
    provider: SegmentationProvider,
    *,
    scratch_dir: Optional[str] = None,
) -> CompositeResult:
    """
    Run the pipeline on a worker thread.

    Cancelling the awaiting task signals the worker, which stops at its next
    stage boundary; a running segmentation call is allowed to finish and the
    scratch file is still removed. Timeouts are the caller's: wrap in asyncio.wait_for.
    """
    cancel = threading.Event()
    try:
        return await asyncio.to_thread(
            blur_background, data, blur_radius, provider, scratch_dir=scratch_dir, cancel=cancel
        )
    except asyncio.CancelledError:
        cancel.set()
        raise
