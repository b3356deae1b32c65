from __future__ import annotations

import logging
import os
from typing import Any, Optional

import torch

from .config import BIREFNET_HF_REPO

logger = logging.getLogger(__name__)


def get_device() -> torch.device:
    """
    Prefer Apple MPS, then CUDA, then CPU. Override with BG_BLUR_DEVICE.
    """
    forced = os.getenv("BG_BLUR_DEVICE", "").strip()
    if forced:
        return torch.device(forced)
    if torch.backends.mps.is_available():
        return torch.device("mps")
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def _freeze_float32(model: torch.nn.Module, device: torch.device) -> torch.nn.Module:
    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)
    return model.to(dtype=torch.float32).to(device)


def load_torchscript_matting_model(model_path: str, device: Optional[torch.device] = None) -> torch.nn.Module:
    """
    Load a matting model exported with torch.jit.save (extension may be .pth).

    State-dict checkpoints are not supported: they need the original model source.
    """
    if device is None:
        device = get_device()
    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found: {model_path}")

    try:
        # Registers torchvision TorchScript ops (e.g. deform_conv2d) used by BiRefNet exports.
        import torchvision  # noqa: F401

        # CPU first: some archives carry float64 attributes that MPS rejects.
        model = torch.jit.load(model_path, map_location="cpu")
    except Exception as e:  # noqa: BLE001 - surface a helpful error
        raise RuntimeError(
            f"Failed to load TorchScript model from {model_path}. "
            "Export it with torch.jit.save(); plain state_dict files are not loadable here."
        ) from e

    logger.info("Loaded TorchScript matting model %s on %s", model_path, device)
    return _freeze_float32(model, device)


def load_birefnet_hf(hf_repo: str = BIREFNET_HF_REPO, device: Optional[torch.device] = None) -> torch.nn.Module:
    """
    Load BiRefNet through transformers (trust_remote_code), float32, eval mode.
    """
    if device is None:
        device = get_device()

    try:
        from transformers import AutoModelForImageSegmentation
    except Exception as e:  # noqa: BLE001
        raise RuntimeError("transformers is not installed. Run: pip install transformers") from e

    # low_cpu_mem_usage=False keeps weights off the meta device; BiRefNet's __init__ calls .item().
    model = AutoModelForImageSegmentation.from_pretrained(
        hf_repo,
        trust_remote_code=True,
        low_cpu_mem_usage=False,
        device_map=None,
    )
    logger.info("Loaded %s on %s", hf_repo, device)
    return _freeze_float32(model, device)


def forward_model(model: torch.nn.Module, x: torch.Tensor) -> Any:
    with torch.no_grad():
        return model(x)
