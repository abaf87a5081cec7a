"""Sobel edge extraction on page pixel buffers.

Channel 0 (red) of the buffer stands in for luminance, so no grayscale
conversion happens before the gradient pass.
"""
from __future__ import annotations

import numpy as np
from PIL import Image

from .utils import round_half_up

EDGE = 255


def _luminance_proxy(pixels: np.ndarray) -> np.ndarray:
    if pixels.ndim == 2:
        return pixels.astype(np.int32)
    return pixels[:, :, 0].astype(np.int32)


def compute_edge_map(pixels: np.ndarray, threshold: float = 200) -> np.ndarray:
    """Return a (H, W) uint8 map with 255 where the Sobel magnitude exceeds threshold.

    Border pixels are never marked: the 3x3 kernel only runs on interior
    pixels and does not wrap around.
    """
    p = _luminance_proxy(pixels)
    h, w = p.shape
    edges = np.zeros((h, w), dtype=np.uint8)
    if h < 3 or w < 3:
        return edges

    tl, tc, tr = p[:-2, :-2], p[:-2, 1:-1], p[:-2, 2:]
    ml, mr = p[1:-1, :-2], p[1:-1, 2:]
    bl, bc, br = p[2:, :-2], p[2:, 1:-1], p[2:, 2:]

    gx = (tr + 2 * mr + br) - (tl + 2 * ml + bl)
    gy = (bl + 2 * bc + br) - (tl + 2 * tc + tr)
    magnitude = np.sqrt(gx.astype(np.float64) ** 2 + gy.astype(np.float64) ** 2)

    edges[1:-1, 1:-1] = np.where(magnitude > threshold, EDGE, 0).astype(np.uint8)
    return edges


def downscale_for_detection(pixels: np.ndarray, max_dim: int = 1200) -> tuple[np.ndarray, float]:
    """Shrink pixels so the longer side is at most max_dim.

    Returns (pixels, scale) where scale <= 1.0 is the factor applied; the
    input buffer is returned untouched when no shrinking is needed.
    """
    h, w = pixels.shape[:2]
    longest = max(w, h)
    if longest <= max_dim or longest == 0:
        return pixels, 1.0

    scale = max_dim / float(longest)
    new_w = max(1, round_half_up(w * scale))
    new_h = max(1, round_half_up(h * scale))
    img = Image.fromarray(np.ascontiguousarray(pixels))
    resized = img.resize((new_w, new_h), Image.Resampling.BILINEAR)
    return np.asarray(resized, dtype=np.uint8), scale
