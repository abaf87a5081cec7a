from __future__ import annotations

import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .utils import append_jsonl, ensure_dir, utc_now_iso, write_json


@dataclass
class JobPaths:
    job_dir: Path
    input_dir: Path
    pages_dir: Path
    panels_dir: Path  # rendered framed panels
    annotated_dir: Path  # debug overlays
    stage_panels_dir: Path
    result_json: Path
    metrics_json: Path
    errors_jsonl: Path


def job_paths(job_dir: str | Path) -> JobPaths:
    """Paths for an existing (or to-be-created) job directory."""
    job_dir = Path(job_dir)
    pages_dir = job_dir / "pages"
    return JobPaths(
        job_dir=job_dir,
        input_dir=job_dir / "input",
        pages_dir=pages_dir,
        panels_dir=pages_dir / "panels",
        annotated_dir=pages_dir / "annotated",
        stage_panels_dir=job_dir / "stage" / "panels",
        result_json=job_dir / "result.json",
        metrics_json=job_dir / "metrics.json",
        errors_jsonl=job_dir / "errors.jsonl",
    )


def create_job_dirs(workspace: str | Path, job_id: str) -> JobPaths:
    paths = job_paths(Path(workspace) / "jobs" / job_id)
    for p in [
        paths.input_dir,
        paths.pages_dir,
        paths.panels_dir,
        paths.annotated_dir,
        paths.stage_panels_dir,
    ]:
        ensure_dir(p)
    return paths


def new_job_id() -> str:
    """Generate a new job ID: YYYY-MM-DD/HH-MM-SS__<shortid> (UTC)."""
    now = datetime.now(timezone.utc)
    date_part = now.strftime("%Y-%m-%d")
    time_part = now.strftime("%H-%M-%S")
    short_id = uuid.uuid4().hex[:8]
    return f"{date_part}/{time_part}__{short_id}"


def record_error(paths: JobPaths, page_id: str, stage: str, message: str) -> None:
    append_jsonl(paths.errors_jsonl, {"page_id": page_id, "stage": stage, "message": message})


def init_job_outputs(paths: JobPaths) -> None:
    # Always create output files, even if empty.
    write_json(paths.result_json, {"job": {}, "pages": []})
    write_json(
        paths.metrics_json,
        {
            "created_at": utc_now_iso(),
            "finished": False,
            "completed_at": None,
            "pages_total": 0,
            "pages_processed": 0,
            "pages_failed": 0,
            "panels_total": 0,
            "splash_panels": 0,
            "whole_page_panels": 0,
            "panels_rendered": 0,
        },
    )
    paths.errors_jsonl.parent.mkdir(parents=True, exist_ok=True)
    paths.errors_jsonl.touch(exist_ok=True)


def snapshot_input(paths: JobPaths, input_path: str | Path, input_type: str) -> None:
    src = Path(input_path)
    if input_type == "pdf" and src.is_file():
        shutil.copy2(src, paths.input_dir / src.name)
    else:
        # For images folder: store a lightweight manifest.
        write_json(paths.input_dir / "manifest.json", {"type": input_type, "path": str(src.resolve())})
