from __future__ import annotations

from typing import Callable

import pytest
from PIL import Image, ImageDraw


def draw_comic_page(
    width: int,
    height: int,
    rects: list[tuple[int, int, int, int]],
) -> Image.Image:
    """Black page with white panels; rects are inclusive XYXY."""
    img = Image.new("RGB", (width, height), color=(0, 0, 0))
    draw = ImageDraw.Draw(img)
    for r in rects:
        draw.rectangle(r, fill=(255, 255, 255))
    return img


# Two panels on top, one wide panel below; 2px black gutters and margins.
THREE_PANEL_RECTS = [
    (2, 2, 197, 297),
    (200, 2, 397, 297),
    (2, 300, 397, 597),
]


@pytest.fixture
def three_panel_page() -> Image.Image:
    return draw_comic_page(400, 600, THREE_PANEL_RECTS)


@pytest.fixture
def comic_page_factory() -> Callable[..., Image.Image]:
    return draw_comic_page
