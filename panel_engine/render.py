"""Draw framed panels into viewport-sized images.

The page behind a focused panel is fitted ("contain"), blurred and dimmed
when the framer asks for background suppression; the sharp crop is then
placed using the panel's viewport transform.
"""
from __future__ import annotations

from typing import Any

from PIL import Image, ImageEnhance, ImageFilter

from .cache import PanelImageCache
from .types import FramedPanel, ViewportTransform
from .utils import round_half_up


def fit_contain(src_w: int, src_h: int, dst_w: int, dst_h: int) -> tuple[int, int, int, int]:
    """Return (x, y, w, h) placing a src_w x src_h image inside dst, centred."""
    if src_w <= 0 or src_h <= 0:
        return 0, 0, dst_w, dst_h
    src_ratio = src_w / src_h
    dst_ratio = dst_w / dst_h
    if src_ratio > dst_ratio:
        # Wider: fit width, centre vertically.
        w = dst_w
        h = max(1, round_half_up(dst_w / src_ratio))
        return 0, (dst_h - h) // 2, w, h
    h = dst_h
    w = max(1, round_half_up(dst_h * src_ratio))
    return (dst_w - w) // 2, 0, w, h


def crop_panel_image(page_image: Image.Image, framed: FramedPanel) -> Image.Image:
    return page_image.crop(framed.crop_coordinates.to_xyxy())


def suppressed_background(
    page_image: Image.Image,
    viewport_width: int,
    viewport_height: int,
    *,
    blur_radius: float = 20,
    dim_factor: float = 0.4,
) -> Image.Image:
    canvas = Image.new("RGB", (viewport_width, viewport_height), (0, 0, 0))
    x, y, w, h = fit_contain(page_image.width, page_image.height, viewport_width, viewport_height)
    fitted = page_image.convert("RGB").resize((w, h), Image.Resampling.BILINEAR)
    canvas.paste(fitted, (x, y))
    canvas = canvas.filter(ImageFilter.GaussianBlur(radius=blur_radius))
    return ImageEnhance.Brightness(canvas).enhance(dim_factor)


def visible_source_box(
    crop_width: int,
    crop_height: int,
    t: ViewportTransform,
    viewport_width: int,
    viewport_height: int,
) -> tuple[float, float, float, float] | None:
    """Part of the crop that lands inside the viewport, as a (l, t, r, b) box.

    None when nothing of the crop is visible.
    """
    if t.scale <= 0:
        return None
    left = max(0.0, -t.offset_x / t.scale)
    top = max(0.0, -t.offset_y / t.scale)
    right = min(float(crop_width), (viewport_width - t.offset_x) / t.scale)
    bottom = min(float(crop_height), (viewport_height - t.offset_y) / t.scale)
    if right <= left or bottom <= top:
        return None
    return left, top, right, bottom


def render_framed_panel(
    page_image: Image.Image,
    framed: FramedPanel,
    viewport_width: int,
    viewport_height: int,
    *,
    cache: PanelImageCache | None = None,
    render_cfg: dict[str, Any] | None = None,
) -> Image.Image:
    cfg = render_cfg or {}
    vw = max(1, int(viewport_width))
    vh = max(1, int(viewport_height))

    if framed.background_suppression.applied:
        canvas = suppressed_background(
            page_image,
            vw,
            vh,
            blur_radius=float(cfg.get("blur_radius", 20)),
            dim_factor=float(cfg.get("dim_factor", 0.4)),
        )
    else:
        canvas = Image.new("RGB", (vw, vh), (0, 0, 0))

    if cache is not None:
        crop = cache.get_or_create(framed.id, lambda: crop_panel_image(page_image, framed))
    else:
        crop = crop_panel_image(page_image, framed)

    t = framed.viewport_transform
    band = visible_source_box(crop.width, crop.height, t, vw, vh)
    if band is None:
        return canvas
    left, top, right, bottom = band
    size = (
        max(1, min(vw, round_half_up((right - left) * t.scale))),
        max(1, min(vh, round_half_up((bottom - top) * t.scale))),
    )
    # Only the rows and columns that land inside the viewport are resampled.
    scaled = crop.convert("RGB").resize(size, Image.Resampling.LANCZOS, box=band)
    canvas.paste(scaled, (max(0, round_half_up(t.offset_x)), max(0, round_half_up(t.offset_y))))
    return canvas
