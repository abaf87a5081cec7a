"""Annotated page images for eyeballing segmentation and reading order."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from PIL import Image, ImageDraw, ImageFont

from .types import Panel


@dataclass
class PanelDebugConfig:
    annotation_font_size: int = 24
    bbox_line_width: int = 3
    colors: dict[str, str] = field(default_factory=lambda: {
        "panel": "#00FF00",  # green
        "splash": "#FFAA00",  # orange
    })


def _get_font(size: int = 16) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    for font_name in ["arial.ttf", "Arial.ttf", "DejaVuSans.ttf", "FreeSans.ttf"]:
        try:
            return ImageFont.truetype(font_name, size)
        except OSError:
            continue
    return ImageFont.load_default()


def generate_annotated_page(
    page_image: Image.Image,
    sequenced_panels: Sequence[Panel],
    config: PanelDebugConfig | None = None,
) -> Image.Image:
    """Draw panel boxes with their 1-based reading order at the box centre."""
    config = config or PanelDebugConfig()
    annotated = page_image.copy().convert("RGB")
    draw = ImageDraw.Draw(annotated)
    font = _get_font(config.annotation_font_size)

    for order, panel in enumerate(sequenced_panels, start=1):
        color = config.colors["splash"] if panel.is_splash else config.colors["panel"]
        x0, y0, x1, y1 = panel.bounding_box.to_xyxy()
        draw.rectangle([(x0, y0), (max(x0, x1 - 1), max(y0, y1 - 1))], outline=color, width=config.bbox_line_width)

        label = panel.id.rsplit("-", 1)[-1]
        draw.text((x0 + 4, y0 + 4), f"#{label}", fill=color, font=font)

        cx = (x0 + x1) // 2
        cy = (y0 + y1) // 2
        order_label = str(order)
        ob = draw.textbbox((cx, cy), order_label, font=font)
        ow = ob[2] - ob[0]
        oh = ob[3] - ob[1]
        draw.rectangle(
            [(cx - ow // 2 - 4, cy - oh // 2 - 4), (cx + ow // 2 + 4, cy + oh // 2 + 4)],
            fill="black",
        )
        draw.text((cx - ow // 2, cy - oh // 2), order_label, fill="white", font=font)

    return annotated
