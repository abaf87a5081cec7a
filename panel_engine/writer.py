from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from .job import JobPaths
from .types import FramedPanel, Page, PageData
from .utils import utc_now_iso, write_json


def framed_record(
    framed: Sequence[FramedPanel],
    viewport_width: float,
    viewport_height: float,
) -> dict[str, Any]:
    return {
        "viewport": {"width": viewport_width, "height": viewport_height},
        "panels": [f.to_dict() for f in framed],
    }


def page_record(
    page: Page,
    data: PageData,
    *,
    direction: str,
    framed: Sequence[FramedPanel],
    viewport_width: float,
    viewport_height: float,
) -> dict[str, Any]:
    return {
        "page_index": page.page_index,
        "page_id": page.page_id,
        "source_ref": page.source_ref,
        "image_path": page.image_path,
        "width": data.width,
        "height": data.height,
        "direction": direction,
        "panels": [p.to_dict() for p in data.panels],
        "sequence": [p.id for p in data.sequenced_panels],
        "framed": framed_record(framed, viewport_width, viewport_height),
    }


@dataclass
class JobWriter:
    paths: JobPaths

    def write_page(self, record: dict[str, Any]) -> None:
        write_json(self.paths.stage_panels_dir / f"{record['page_id']}.json", record)

    def write_final(
        self,
        job_meta: dict[str, Any],
        pages: list[dict[str, Any]],
        metrics: dict[str, Any],
    ) -> None:
        now = utc_now_iso()

        # Mark completion only when final outputs are successfully written.
        metrics_out = dict(metrics)
        metrics_out["finished"] = True
        metrics_out["completed_at"] = now

        job_out = dict(job_meta)
        job_out["finished"] = True
        job_out["completed_at"] = now

        write_json(self.paths.result_json, {"job": job_out, "pages": pages})
        write_json(self.paths.metrics_json, metrics_out)
