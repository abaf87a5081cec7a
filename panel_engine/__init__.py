"""Comic/manga panel extraction engine.

Finds panels on rasterized pages, orders them for reading (rtl or ltr) and
frames each one for a viewport:
- detect_panels: Sobel edges + flood-fill regions -> panels
- sequence_panels: row-banded reading order
- create_framed_panel: crop, scale and background-suppression decision

OCR, TTS and PDF assembly are out of scope.
"""

from __future__ import annotations

from .framing import create_framed_panel
from .segmenter import detect_panels
from .sequencer import sequence_panels
from .types import BoundingBox, FramedPanel, PageData, Panel

__all__ = [
    "__version__",
    "BoundingBox",
    "FramedPanel",
    "PageData",
    "Panel",
    "create_framed_panel",
    "detect_panels",
    "sequence_panels",
]

__version__ = "0.1.0"
