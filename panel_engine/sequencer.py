from __future__ import annotations

from typing import Sequence

from .types import READING_DIRECTIONS, Panel


def band_rows(panels: Sequence[Panel], tolerance_px: float = 5) -> list[list[Panel]]:
    """Greedy single-pass row banding.

    A panel joins the first existing row whose first panel's y is within
    tolerance_px (strict) of its own y; otherwise it opens a new row. Row
    membership depends on input order, not on a global y-sort.
    """
    rows: list[list[Panel]] = []
    for panel in panels:
        y = panel.bounding_box.y
        for row in rows:
            if abs(y - row[0].bounding_box.y) < tolerance_px:
                row.append(panel)
                break
        else:
            rows.append([panel])
    return rows


def sequence_panels(
    panels: Sequence[Panel],
    direction: str = "rtl",
    *,
    tolerance_px: float = 5,
) -> list[Panel]:
    """Order panels for reading: rows top-to-bottom, then by x within a row.

    rtl visits the right-most panel of a row first, ltr the left-most.
    """
    if direction not in READING_DIRECTIONS:
        raise ValueError(f"Unknown reading direction: {direction!r} (expected one of {READING_DIRECTIONS})")

    if len(panels) == 0:
        return []
    if len(panels) == 1:
        return list(panels)

    rows = band_rows(panels, tolerance_px=tolerance_px)
    rows.sort(key=lambda row: row[0].bounding_box.y)

    ordered: list[Panel] = []
    for row in rows:
        ordered.extend(sorted(row, key=lambda p: p.bounding_box.x, reverse=(direction == "rtl")))
    return ordered
