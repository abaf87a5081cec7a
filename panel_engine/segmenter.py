"""Panel segmentation: connected non-edge regions become panels.

Steps per page:
1. Sobel edge map (on a downscaled copy for large pages)
2. Row-major scan; every unvisited non-edge pixel seeds a 4-connected flood fill
3. Regions not larger than `min_area_ratio` of the page are dropped as noise
4. Region bbox is expanded by a gutter margin and clamped to the page
5. Splash classification on the expanded box

Nested panels are not detected: `is_nested` is always False.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

from .edges import compute_edge_map, downscale_for_detection
from .types import BoundingBox, PageData, Panel
from .utils import clamp_int, round_half_up

log = logging.getLogger(__name__)


def panel_id(page_index: int, n: int) -> str:
    return f"page-{page_index}-panel-{n}"


def is_splash_area(area: int, page_area: int, splash_ratio: float = 0.8) -> bool:
    return area > page_area * splash_ratio


def flood_fill(
    edge_flat: Sequence[int],
    visited: bytearray,
    width: int,
    height: int,
    start_x: int,
    start_y: int,
) -> list[int]:
    """Collect the 4-connected non-edge region containing (start_x, start_y).

    Uses an explicit stack; large uniform panels would overflow the
    interpreter's recursion limit otherwise. Marks members in `visited` and
    returns their flat row-major indices.
    """
    region: list[int] = []
    stack = [(start_x, start_y)]

    while stack:
        x, y = stack.pop()
        if x < 0 or x >= width or y < 0 or y >= height:
            continue
        idx = y * width + x
        if visited[idx] or edge_flat[idx] != 0:
            continue

        visited[idx] = 1
        region.append(idx)

        stack.append((x + 1, y))
        stack.append((x - 1, y))
        stack.append((x, y + 1))
        stack.append((x, y - 1))

    return region


def region_bounding_box(region: Sequence[int], width: int) -> BoundingBox:
    idx = np.asarray(region, dtype=np.int64)
    xs = idx % width
    ys = idx // width
    x0, x1 = int(xs.min()), int(xs.max())
    y0, y1 = int(ys.min()), int(ys.max())
    return BoundingBox(x=x0, y=y0, width=x1 - x0 + 1, height=y1 - y0 + 1)


def _expand_bbox(b: BoundingBox, gutter: int, w: int, h: int) -> BoundingBox:
    x0 = clamp_int(b.x - gutter, 0, max(0, w - 1))
    y0 = clamp_int(b.y - gutter, 0, max(0, h - 1))
    x1 = clamp_int(b.right + gutter, 0, w)
    y1 = clamp_int(b.bottom + gutter, 0, h)
    return BoundingBox(x=x0, y=y0, width=max(0, x1 - x0), height=max(0, y1 - y0))


def _rescale_bbox(b: BoundingBox, inv_scale: float, w: int, h: int) -> BoundingBox:
    x = clamp_int(round_half_up(b.x * inv_scale), 0, max(0, w - 1))
    y = clamp_int(round_half_up(b.y * inv_scale), 0, max(0, h - 1))
    bw = clamp_int(round_half_up(b.width * inv_scale), 0, w - x)
    bh = clamp_int(round_half_up(b.height * inv_scale), 0, h - y)
    return BoundingBox(x=x, y=y, width=bw, height=bh)


def whole_page_panel(page_index: int, width: int, height: int) -> Panel:
    return Panel(
        id=panel_id(page_index, 0),
        page_index=page_index,
        bounding_box=BoundingBox(x=0, y=0, width=max(0, width), height=max(0, height)),
        is_nested=False,
        is_splash=True,
    )


@dataclass
class Segmenter:
    detect_cfg: dict[str, Any] = field(default_factory=dict)

    @property
    def edge_threshold(self) -> float:
        return float(self.detect_cfg.get("edge_threshold", 200))

    @property
    def min_area_ratio(self) -> float:
        return float(self.detect_cfg.get("min_area_ratio", 0.02))

    @property
    def gutter_ratio(self) -> float:
        return float(self.detect_cfg.get("gutter_ratio", 0.02))

    @property
    def splash_ratio(self) -> float:
        return float(self.detect_cfg.get("splash_ratio", 0.8))

    @property
    def max_detect_dim(self) -> int:
        return int(self.detect_cfg.get("max_detect_dim", 1200))

    def analyze_edge_map(self, edges: np.ndarray, page_index: int) -> list[Panel]:
        """Extract panels from a binary edge map at the map's own resolution.

        May return an empty list; the whole-page fallback is applied by `detect`.
        """
        h, w = edges.shape[:2]
        page_area = w * h
        min_panel_area = page_area * self.min_area_ratio
        gutter = round_half_up(min(w, h) * self.gutter_ratio)

        edge_flat = edges.reshape(-1).tolist()
        visited = bytearray(w * h)
        panels: list[Panel] = []

        # Row-major order of non-edge pixels fixes region discovery order.
        for idx in np.flatnonzero(edges.reshape(-1) == 0).tolist():
            if visited[idx]:
                continue
            region = flood_fill(edge_flat, visited, w, h, idx % w, idx // w)
            if len(region) <= min_panel_area:
                continue

            bbox = _expand_bbox(region_bounding_box(region, w), gutter, w, h)
            panels.append(
                Panel(
                    id=panel_id(page_index, len(panels)),
                    page_index=page_index,
                    bounding_box=bbox,
                    is_nested=False,
                    is_splash=is_splash_area(bbox.area, page_area, self.splash_ratio),
                )
            )
        return panels

    def detect(self, page: PageData) -> list[Panel]:
        width, height = int(page.width), int(page.height)
        if width <= 0 or height <= 0 or page.pixels.size == 0:
            log.debug("page %d: degenerate %dx%d, using whole-page panel", page.page_index, width, height)
            return [whole_page_panel(page.page_index, width, height)]

        pixels, scale = downscale_for_detection(page.pixels, self.max_detect_dim)
        edges = compute_edge_map(pixels, self.edge_threshold)
        panels = self.analyze_edge_map(edges, page.page_index)

        if scale != 1.0 and panels:
            inv_scale = 1.0 / scale
            page_area = width * height
            rescaled: list[Panel] = []
            for i, p in enumerate(panels):
                bbox = _rescale_bbox(p.bounding_box, inv_scale, width, height)
                rescaled.append(
                    Panel(
                        id=panel_id(page.page_index, i),
                        page_index=page.page_index,
                        bounding_box=bbox,
                        is_nested=False,
                        is_splash=is_splash_area(bbox.area, page_area, self.splash_ratio),
                    )
                )
            panels = rescaled

        if not panels:
            panels = [whole_page_panel(page.page_index, width, height)]

        log.debug(
            "page %d: %d panel(s) at detect scale %.3f (%d splash)",
            page.page_index,
            len(panels),
            scale,
            sum(1 for p in panels if p.is_splash),
        )
        return panels


def detect_panels(page: PageData, detect_cfg: dict[str, Any] | None = None) -> list[Panel]:
    """Detect panels on a page. Always returns at least one panel."""
    return Segmenter(detect_cfg=dict(detect_cfg or {})).detect(page)
