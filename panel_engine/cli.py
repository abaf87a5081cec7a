from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any

from .config import load_config
from .job import create_job_dirs, init_job_outputs, new_job_id, snapshot_input
from .pipeline import EnginePipeline, RunOptions, reframe_job, resolve_viewport
from .types import READING_DIRECTIONS, BoundingBox
from .utils import load_json


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="panel_engine")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Detect, sequence and frame panels for a comic")
    run.add_argument("--input", required=True, help="Input path (pdf file or images folder)")
    run.add_argument("--type", required=True, choices=["pdf", "images"], help="Input type")
    run.add_argument("--workspace", default="./workspace", help="Workspace root")
    run.add_argument("--direction", default="rtl", choices=list(READING_DIRECTIONS), help="Reading direction")
    run.add_argument("--dpi", type=int, default=150, help="DPI for PDF rendering (pdf only)")
    run.add_argument("--viewport-width", type=int, default=None)
    run.add_argument("--viewport-height", type=int, default=None)
    run.add_argument("--workers", type=int, default=1, help="Pages segmented concurrently")
    run.add_argument("--config", default=None, help="Config path (JSON); defaults are built in")
    run.add_argument("--render", action="store_true", help="Write framed panel images")
    run.add_argument("--debug", action="store_true", help="Write annotated page images")

    reframe = sub.add_parser("reframe", help="Recompute framing for a new viewport without re-segmenting")
    reframe.add_argument("--job-dir", required=True, help="Job directory (workspace/jobs/<job_id>)")
    reframe.add_argument("--viewport-width", type=int, required=True)
    reframe.add_argument("--viewport-height", type=int, required=True)
    reframe.add_argument("--config", default=None, help="Config path (JSON)")
    reframe.add_argument("--render", action="store_true", help="Write framed panel images")

    validate = sub.add_parser("validate", help="Validate output contract and panel boxes")
    validate.add_argument("--job-dir", required=True, help="Job directory (workspace/jobs/<job_id>)")

    return p


def cmd_run(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args.config)
        resolve_viewport(cfg, args.viewport_width, args.viewport_height)
    except Exception as e:
        print(f"run_failed: {e}")
        return 1

    job_id = new_job_id()
    paths = create_job_dirs(args.workspace, job_id)
    init_job_outputs(paths)
    snapshot_input(paths, args.input, args.type)

    opts = RunOptions(
        input_path=args.input,
        input_type=args.type,
        direction=args.direction,
        dpi=args.dpi,
        viewport_width=args.viewport_width,
        viewport_height=args.viewport_height,
        workers=max(1, int(args.workers)),
        render=bool(args.render),
        debug=bool(args.debug),
    )

    EnginePipeline(paths=paths, cfg=cfg, opts=opts).run(job_id=job_id)
    print(str(paths.job_dir))
    return 0


def cmd_reframe(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args.config)
        n = reframe_job(
            args.job_dir,
            args.viewport_width,
            args.viewport_height,
            cfg=cfg,
            render=bool(args.render),
        )
        print(f"framed_panels={n}")
        return 0
    except Exception as e:
        print(f"reframe_failed: {e}")
        return 1


def _validate_page(idx: int, page: Any, errors: list[str]) -> int:
    if not isinstance(page, dict):
        errors.append(f"invalid page[{idx}]: not an object")
        return 1

    for k in ("page_index", "page_id", "width", "height", "panels", "sequence", "framed"):
        if k not in page:
            errors.append(f"invalid page[{idx}]: missing field {k}")
            return 1

    invalid = 0
    w, h = int(page["width"]), int(page["height"])
    panels = page.get("panels") or []
    if not panels:
        errors.append(f"invalid page[{idx}]: no panels")
        invalid += 1

    ids: list[str] = []
    for j, p in enumerate(panels):
        try:
            b = BoundingBox.from_dict(p["bounding_box"])
        except Exception as e:
            errors.append(f"invalid page[{idx}].panel[{j}]: bad bounding_box: {e}")
            invalid += 1
            continue
        ids.append(str(p.get("id")))
        inside = b.x >= 0 and b.y >= 0 and b.right <= w and b.bottom <= h
        if not inside:
            errors.append(f"invalid page[{idx}].panel[{j}]: bbox outside page {w}x{h}")
            invalid += 1
        if int(p.get("area", -1)) != b.area:
            errors.append(f"invalid page[{idx}].panel[{j}]: area mismatch")
            invalid += 1

    if sorted(ids) != sorted(str(s) for s in page.get("sequence") or []):
        errors.append(f"invalid page[{idx}]: sequence is not a permutation of panel ids")
        invalid += 1
    return invalid


def cmd_validate(args: argparse.Namespace) -> int:
    job_dir = Path(args.job_dir)
    errors: list[str] = []

    missing_contract_files = 0
    invalid_pages = 0

    # Output Contract (must always exist)
    for f in ("result.json", "metrics.json", "errors.jsonl"):
        p = job_dir / f
        if not p.exists():
            missing_contract_files += 1
            errors.append(f"missing: {p}")

    try:
        result = load_json(job_dir / "result.json")
        pages = (result or {}).get("pages", []) if isinstance(result, dict) else []
        for idx, page in enumerate(pages):
            invalid_pages += _validate_page(idx, page, errors)
    except Exception as e:
        errors.append(f"failed to read result.json: {e}")
        invalid_pages += 1

    print(f"missing_contract_files={missing_contract_files}")
    print(f"invalid_pages={invalid_pages}")

    if errors:
        for m in errors:
            print(m)
        return 1

    print("OK")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "run":
        return cmd_run(args)

    if args.command == "reframe":
        return cmd_reframe(args)

    if args.command == "validate":
        return cmd_validate(args)

    raise SystemExit(2)


if __name__ == "__main__":
    raise SystemExit(main())
