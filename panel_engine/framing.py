"""Auto-framing: fit a panel crop to the viewport width.

Everything here is a pure function of its arguments so it can be re-run on
every viewport resize without touching segmentation.
"""
from __future__ import annotations

from typing import Sequence

from .types import BackgroundSuppression, BoundingBox, FramedPanel, Panel, ViewportTransform


def clamp_crop(bbox: BoundingBox, page_width: int, page_height: int) -> BoundingBox:
    """Re-clamp a panel box to the page. Width/height never drop below 1."""
    x = min(max(0, bbox.x), max(0, page_width - 1))
    y = min(max(0, bbox.y), max(0, page_height - 1))
    width = max(1, min(page_width, bbox.x + bbox.width) - x)
    height = max(1, min(page_height, bbox.y + bbox.height) - y)
    return BoundingBox(x=x, y=y, width=width, height=height)


def create_framed_panel(
    panel: Panel,
    page_width: int,
    page_height: int,
    viewport_width: float,
    viewport_height: float,
) -> FramedPanel:
    if viewport_width <= 0 or viewport_height <= 0:
        raise ValueError(f"viewport must be positive, got {viewport_width}x{viewport_height}")

    crop = clamp_crop(panel.bounding_box, page_width, page_height)

    # Panel always spans the full viewport width.
    scale = viewport_width / crop.width
    scaled_height = crop.height * scale
    offset_x = 0.0
    # Negative when the scaled panel is taller than the viewport.
    offset_y = (viewport_height - scaled_height) / 2

    needs_suppression = scaled_height < viewport_height or not panel.is_splash

    return FramedPanel(
        panel=panel,
        crop_coordinates=crop,
        scaling_mode="contain",
        background_suppression=BackgroundSuppression(
            applied=needs_suppression,
            type="combined" if needs_suppression else "blur",
        ),
        viewport_transform=ViewportTransform(scale=scale, offset_x=offset_x, offset_y=offset_y),
    )


def frame_panels(
    panels: Sequence[Panel],
    page_width: int,
    page_height: int,
    viewport_width: float,
    viewport_height: float,
) -> list[FramedPanel]:
    return [create_framed_panel(p, page_width, page_height, viewport_width, viewport_height) for p in panels]
