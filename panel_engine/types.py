from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import numpy as np
from PIL import Image

ReadingDirection = Literal["ltr", "rtl"]
ScalingMode = Literal["contain", "cover"]
SuppressionType = Literal["blur", "dim", "vignette", "combined"]

READING_DIRECTIONS: tuple[str, ...] = ("ltr", "rtl")


@dataclass(frozen=True)
class Page:
    page_index: int  # 0-based
    page_id: str  # e.g. page_003
    source_ref: str  # e.g. book.pdf#page=3
    image_path: str  # relative path under job dir (pages/page_003.png)


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in page pixel coordinates (XYWH)."""
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    def to_xyxy(self) -> tuple[int, int, int, int]:
        return self.x, self.y, self.right, self.bottom

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "BoundingBox":
        return cls(int(d["x"]), int(d["y"]), int(d["width"]), int(d["height"]))


@dataclass(frozen=True)
class Panel:
    """A detected panel. `area` is derived from the box, never stored."""
    id: str
    page_index: int
    bounding_box: BoundingBox
    is_nested: bool = False
    is_splash: bool = False

    @property
    def area(self) -> int:
        return self.bounding_box.area

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "page_index": self.page_index,
            "bounding_box": self.bounding_box.to_dict(),
            "is_nested": self.is_nested,
            "is_splash": self.is_splash,
            "area": self.area,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Panel":
        return cls(
            id=str(d["id"]),
            page_index=int(d["page_index"]),
            bounding_box=BoundingBox.from_dict(d["bounding_box"]),
            is_nested=bool(d.get("is_nested", False)),
            is_splash=bool(d.get("is_splash", False)),
        )


@dataclass(frozen=True)
class ViewportTransform:
    """Maps crop space to viewport space."""
    scale: float
    offset_x: float
    offset_y: float


@dataclass(frozen=True)
class BackgroundSuppression:
    applied: bool
    type: SuppressionType


@dataclass(frozen=True)
class FramedPanel:
    panel: Panel
    crop_coordinates: BoundingBox
    scaling_mode: ScalingMode
    background_suppression: BackgroundSuppression
    viewport_transform: ViewportTransform

    @property
    def id(self) -> str:
        return self.panel.id

    @property
    def is_splash(self) -> bool:
        return self.panel.is_splash

    def to_dict(self) -> dict[str, Any]:
        out = self.panel.to_dict()
        out["crop_coordinates"] = self.crop_coordinates.to_dict()
        out["scaling_mode"] = self.scaling_mode
        out["background_suppression"] = {
            "applied": self.background_suppression.applied,
            "type": self.background_suppression.type,
        }
        out["viewport_transform"] = {
            "scale": self.viewport_transform.scale,
            "offset_x": self.viewport_transform.offset_x,
            "offset_y": self.viewport_transform.offset_y,
        }
        return out


@dataclass
class PageData:
    page_index: int
    pixels: np.ndarray  # (H, W, 4) uint8 RGBA, read-only for the core
    width: int
    height: int
    panels: list[Panel] = field(default_factory=list)
    sequenced_panels: list[Panel] = field(default_factory=list)

    @classmethod
    def from_image(cls, page_index: int, image: Image.Image) -> "PageData":
        pixels = np.asarray(image.convert("RGBA"), dtype=np.uint8)
        h, w = pixels.shape[:2]
        return cls(page_index=page_index, pixels=pixels, width=int(w), height=int(h))
