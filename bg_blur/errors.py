from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """
    Base error for the blur pipeline.

    `stage` names the step that failed ("normalize", "segment", "blur", "composite")
    so callers can tell bad input apart from an unavailable segmentation backend.
    """

    stage = "pipeline"

    def __init__(self, message: str, *, stage: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.cause = cause


class UnsupportedFormat(PipelineError, ValueError):
    stage = "normalize"


class InvalidParameter(PipelineError, ValueError):
    stage = "blur"


class DimensionMismatch(PipelineError, ValueError):
    stage = "composite"


class SegmentationFailed(PipelineError, RuntimeError):
    """Both the in-memory and the file-based segmentation attempts failed."""

    stage = "segment"

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        fallback_error: Optional[BaseException] = None,
    ):
        super().__init__(message, cause=cause)
        self.fallback_error = fallback_error


class Cancelled(PipelineError):
    """The caller abandoned the request; raised at the next stage boundary."""
