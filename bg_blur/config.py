"""
Centralized configuration constants for the background blur pipeline.

Ground rules:
- Rasters between stages are uint8 RGBA, straight alpha.
- Colour math (blur, compositing) runs on premultiplied float32.
"""

from __future__ import annotations

import os
import tempfile

# Formats as reported by Pillow's `Image.format` after sniffing the payload.
SUPPORTED_FORMATS = frozenset({"JPEG", "PNG", "WEBP"})

# Segmentation backend used when the caller does not pass one explicitly.
# Accepted: "birefnet", "hf:<repo>", "rembg", "rembg:<model>", or a TorchScript path.
DEFAULT_SEGMENTER = "birefnet"
BIREFNET_HF_REPO = "ZhengPeng7/BiRefNet"
# rembg's small model.
REMBG_MODEL = "u2netp"

# NOTE: BiRefNet internally splits into patches; this size must be divisible by
# its patching grid. 1088 is the closest "1080-class" square that works reliably.
MATTE_INPUT_SIZE = 1088
MATTE_PAD_COLOR = 127
IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]

# Matte refinement. Set ERODE_KERNEL_SIZE / EDGE_BLUR_RADIUS to 0 to disable a step.
MATTE_THRESHOLD = 0.05
ERODE_KERNEL_SIZE = 3
EDGE_BLUR_RADIUS = 1

SCRATCH_PREFIX = "temp_input_"


def get_segmenter_spec() -> str:
    return os.getenv("BG_BLUR_SEGMENTER", "").strip() or DEFAULT_SEGMENTER


def get_scratch_dir() -> str:
    """
    Directory for the segmenter's file-mode fallback.
    Falls back to the system temp dir when BG_BLUR_SCRATCH_DIR is unset or not a directory.
    """
    d = os.getenv("BG_BLUR_SCRATCH_DIR", "").strip()
    if d and os.path.isdir(d):
        return d
    return tempfile.gettempdir()
