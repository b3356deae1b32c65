from __future__ import annotations

import base64
from typing import Dict, Literal

from pydantic import BaseModel, Field


class CompositeResult(BaseModel):
    image: bytes
    size: int
    width: int
    height: int
    segmentation_path: Literal["buffer", "file"]
    timings: Dict[str, float] = Field(default_factory=dict)

    def to_data_url(self) -> str:
        """PNG payload as a `data:` URL, for callers that return the image inline."""
        return "data:image/png;base64," + base64.b64encode(self.image).decode("utf-8")

    def summary(self) -> Dict[str, object]:
        """JSON-serializable view without the image payload."""
        return {
            "size": self.size,
            "width": self.width,
            "height": self.height,
            "segmentation_path": self.segmentation_path,
            "timings": {k: round(float(v), 4) for k, v in self.timings.items()},
        }
