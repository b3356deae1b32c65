from __future__ import annotations

import logging
import os
from typing import Optional

import numpy as np
from PIL import Image

from .config import BIREFNET_HF_REPO, REMBG_MODEL, get_segmenter_spec
from .matting import letterbox, predict_matte, refine_matte, source_to_rgb, to_model_tensor
from .model import get_device, load_birefnet_hf, load_torchscript_matting_model
from .segmenter import SegmentationProvider, Source

logger = logging.getLogger(__name__)


class BiRefNetProvider(SegmentationProvider):
    """
    Local salient-object matting (BiRefNet or any TorchScript model with the same I/O).

    Returns a float32 matte (H,W) in [0,1] at the source resolution.
    """

    name = "birefnet"

    def __init__(self, model, device):
        self.model = model
        self.device = device

    @classmethod
    def from_spec(cls, model_spec: str = BIREFNET_HF_REPO) -> "BiRefNetProvider":
        device = get_device()
        if model_spec.startswith("hf:"):
            model = load_birefnet_hf(model_spec[len("hf:") :], device=device)
        elif model_spec == "birefnet":
            model = load_birefnet_hf(BIREFNET_HF_REPO, device=device)
        elif os.path.exists(model_spec):
            model = load_torchscript_matting_model(model_spec, device=device)
        else:
            model = load_birefnet_hf(model_spec, device=device)
        return cls(model, device)

    def extract(self, source: Source) -> np.ndarray:
        rgb = source_to_rgb(source)
        square, meta = letterbox(rgb)
        matte_sq = predict_matte(self.model, to_model_tensor(square), self.device)
        return refine_matte(matte_sq, meta)


class RembgProvider(SegmentationProvider):
    """
    rembg (U^2-Net family, ONNX runtime). Returns the cutout's alpha channel.
    """

    name = "rembg"

    def __init__(self, model_name: str = REMBG_MODEL):
        try:
            from rembg import new_session, remove
        except Exception as e:  # noqa: BLE001
            raise RuntimeError("rembg is not installed. Run: pip install 'bg-blur[rembg]'") from e
        self.model_name = model_name
        self._remove = remove
        self._session = new_session(model_name)

    def extract(self, source: Source) -> np.ndarray:
        if isinstance(source, np.ndarray):
            img = Image.fromarray(np.ascontiguousarray(source[..., :3]))
        else:
            with Image.open(os.fspath(source)) as f:
                img = f.convert("RGB")
        cutout = self._remove(img, session=self._session)
        return np.asarray(cutout.convert("RGBA"))[..., 3]


def load_provider(spec: Optional[str] = None) -> SegmentationProvider:
    """
    Build a provider from a short spec string:
      - "birefnet" (default) / "hf:<repo>" / path to a TorchScript file
      - "rembg" / "rembg:<model>"
    """
    spec = (spec or get_segmenter_spec()).strip()
    if spec == "rembg" or spec.startswith("rembg:"):
        model_name = spec.split(":", 1)[1] if ":" in spec else REMBG_MODEL
        logger.info("Using rembg segmenter (%s)", model_name)
        return RembgProvider(model_name or REMBG_MODEL)
    logger.info("Using matting segmenter (%s)", spec)
    return BiRefNetProvider.from_spec(spec)
