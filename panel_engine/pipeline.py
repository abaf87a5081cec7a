from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Sequence

from PIL import Image

from .cache import PanelImageCache
from .config import EngineConfig
from .framing import frame_panels
from .job import JobPaths, job_paths, record_error
from .page_provider import PageProvider, load_page_image
from .panel_debug import generate_annotated_page
from .render import render_framed_panel
from .segmenter import detect_panels
from .sequencer import sequence_panels
from .types import FramedPanel, Page, PageData, Panel
from .utils import ensure_dir, load_json, utc_now_iso, write_json
from .writer import JobWriter, framed_record, page_record

log = logging.getLogger(__name__)


class ProcessingCancelled(Exception):
    """Raised when the caller abandons a batch through its cancel event.

    `completed` holds the pages that finished before the cancel was seen,
    in input order.
    """

    def __init__(self, message: str, completed: list[PageData] | None = None):
        super().__init__(message)
        self.completed = list(completed or [])


def process_page(page: PageData, cfg: EngineConfig, direction: str = "rtl") -> PageData:
    """Segment and sequence one page in place. Touches nothing but `page`."""
    page.panels = detect_panels(page, cfg.detect)
    page.sequenced_panels = sequence_panels(
        page.panels,
        direction,
        tolerance_px=float(cfg.sequence.get("row_tolerance_px", 5)),
    )
    return page


def process_pages(
    pages: Sequence[PageData],
    cfg: EngineConfig,
    direction: str = "rtl",
    *,
    workers: int = 1,
    cancel_event: threading.Event | None = None,
    on_error: Callable[[PageData, Exception], None] | None = None,
) -> list[PageData]:
    """Process pages, optionally on a thread pool.

    Output order always matches input order. When `on_error` is given a
    failing page is reported there and left out of the result; otherwise the
    exception propagates. Setting `cancel_event` stops pending pages and
    raises ProcessingCancelled carrying the pages finished so far.
    """

    def _task(page: PageData) -> PageData:
        if cancel_event is not None and cancel_event.is_set():
            raise ProcessingCancelled(f"page {page.page_index} cancelled before start")
        return process_page(page, cfg, direction)

    results: list[PageData] = []

    def _check_cancelled() -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ProcessingCancelled("processing cancelled", completed=results)

    if workers <= 1:
        for page in pages:
            _check_cancelled()
            try:
                results.append(_task(page))
            except ProcessingCancelled:
                raise
            except Exception as e:
                if on_error is None:
                    raise
                on_error(page, e)
        return results

    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures: list[tuple[PageData, Future[PageData]]] = [
            (page, executor.submit(_task, page)) for page in pages
        ]
        # Collected in submission order, not completion order.
        for page, fut in futures:
            _check_cancelled()
            try:
                results.append(fut.result())
            except ProcessingCancelled as e:
                raise ProcessingCancelled(str(e), completed=results) from None
            except Exception as e:
                if on_error is None:
                    raise
                on_error(page, e)
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
    return results


def _chunks(items: Iterable[Any], size: int) -> Iterator[list[Any]]:
    chunk: list[Any] = []
    for item in items:
        chunk.append(item)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


@dataclass
class RunOptions:
    input_path: str
    input_type: str
    direction: str = "rtl"
    dpi: int = 150
    viewport_width: int | None = None
    viewport_height: int | None = None
    workers: int = 1
    render: bool = False
    debug: bool = False


def resolve_viewport(cfg: EngineConfig, width: int | None, height: int | None) -> tuple[int, int]:
    """Explicit viewport size, else the config's. Both sides must be positive."""
    w = int(width if width is not None else cfg.frame.get("viewport_width", 1280))
    h = int(height if height is not None else cfg.frame.get("viewport_height", 720))
    if w <= 0 or h <= 0:
        raise ValueError(f"viewport must be positive, got {w}x{h}")
    return w, h


class EnginePipeline:
    def __init__(self, paths: JobPaths, cfg: EngineConfig, opts: RunOptions):
        self.paths = paths
        self.cfg = cfg
        self.opts = opts

        self.page_provider = PageProvider(
            input_path=opts.input_path,
            input_type=opts.input_type,
            dpi=opts.dpi,
            paths=paths,
        )
        self.writer = JobWriter(paths=paths)
        self.viewport_width, self.viewport_height = resolve_viewport(
            cfg, opts.viewport_width, opts.viewport_height
        )
        self.cache = PanelImageCache(max_entries=int(cfg.render.get("cache_max_entries", 64)))

    def _iter_rasterized(self, metrics: dict[str, Any]) -> Iterator[tuple[Page, Image.Image]]:
        try:
            for page, img in self.page_provider.iter_pages():
                metrics["pages_total"] += 1
                yield page, img
        except Exception as e:
            # Pages after a rasterizer failure never reach segmentation.
            log.error("rasterization failed: %s", e)
            record_error(self.paths, page_id="-", stage="rasterize", message=str(e))
            metrics["pages_failed"] += 1

    def _finish_page(
        self,
        page: Page,
        img: Image.Image,
        data: PageData,
        metrics: dict[str, Any],
    ) -> dict[str, Any]:
        framed = frame_panels(
            data.sequenced_panels,
            data.width,
            data.height,
            self.viewport_width,
            self.viewport_height,
        )
        record = page_record(
            page,
            data,
            direction=self.opts.direction,
            framed=framed,
            viewport_width=self.viewport_width,
            viewport_height=self.viewport_height,
        )
        self.writer.write_page(record)

        if self.opts.render:
            metrics["panels_rendered"] += render_page_panels(
                self.paths, img, framed, self.viewport_width, self.viewport_height,
                cache=self.cache, render_cfg=self.cfg.render,
            )
            self.cache.evict_page(data.page_index)

        if self.opts.debug:
            annotated = generate_annotated_page(img, data.sequenced_panels)
            ensure_dir(self.paths.annotated_dir)
            annotated.save(self.paths.annotated_dir / f"{page.page_id}.png", format="PNG")

        metrics["pages_processed"] += 1
        metrics["panels_total"] += len(data.panels)
        metrics["splash_panels"] += sum(1 for p in data.panels if p.is_splash)
        if len(data.panels) == 1 and data.panels[0].bounding_box.area == data.width * data.height:
            metrics["whole_page_panels"] += 1
        return record

    def run(self, job_id: str, cancel_event: threading.Event | None = None) -> None:
        metrics: dict[str, Any] = {
            "created_at": utc_now_iso(),
            "pages_total": 0,
            "pages_processed": 0,
            "pages_failed": 0,
            "panels_total": 0,
            "splash_panels": 0,
            "whole_page_panels": 0,
            "panels_rendered": 0,
        }
        job_meta = {
            "job_id": job_id,
            "input": {"type": self.opts.input_type, "path": self.opts.input_path},
            "direction": self.opts.direction,
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "created_at": metrics["created_at"],
        }

        pages_out: list[dict[str, Any]] = []
        workers = max(1, int(self.opts.workers))
        by_index: dict[int, tuple[Page, Image.Image]] = {}

        def _on_error(data: PageData, e: Exception) -> None:
            page, _ = by_index[data.page_index]
            log.warning("%s: segmentation failed: %s", page.page_id, e)
            record_error(self.paths, page_id=page.page_id, stage="segment", message=str(e))
            metrics["pages_failed"] += 1

        # Bounded batches keep at most a few pixel buffers alive at once.
        for chunk in _chunks(self._iter_rasterized(metrics), workers * 2):
            by_index.clear()
            seeds: list[PageData] = []
            for page, img in chunk:
                by_index[page.page_index] = (page, img)
                seeds.append(PageData.from_image(page.page_index, img))

            done = process_pages(
                seeds,
                self.cfg,
                self.opts.direction,
                workers=workers,
                cancel_event=cancel_event,
                on_error=_on_error,
            )
            for data in done:
                page, img = by_index[data.page_index]
                try:
                    pages_out.append(self._finish_page(page, img, data, metrics))
                except Exception as e:
                    log.warning("%s: output failed: %s", page.page_id, e)
                    record_error(self.paths, page_id=page.page_id, stage="output", message=str(e))
                    metrics["pages_failed"] += 1
                else:
                    log.info("%s: %d panel(s)", page.page_id, len(data.panels))

        self.writer.write_final(job_meta=job_meta, pages=pages_out, metrics=metrics)


def render_page_panels(
    paths: JobPaths,
    page_image: Image.Image,
    framed: Sequence[FramedPanel],
    viewport_width: int,
    viewport_height: int,
    *,
    cache: PanelImageCache | None = None,
    render_cfg: dict[str, Any] | None = None,
) -> int:
    ensure_dir(paths.panels_dir)
    for f in framed:
        out = render_framed_panel(
            page_image, f, viewport_width, viewport_height, cache=cache, render_cfg=render_cfg
        )
        out.save(paths.panels_dir / f"{f.id}.png", format="PNG")
    return len(framed)


def _sequenced_from_record(record: dict[str, Any]) -> list[Panel]:
    panels = {p.id: p for p in (Panel.from_dict(d) for d in record.get("panels", []))}
    return [panels[pid] for pid in record.get("sequence", []) if pid in panels]


def reframe_job(
    job_dir: str | Path,
    viewport_width: int,
    viewport_height: int,
    *,
    cfg: EngineConfig,
    render: bool = False,
) -> int:
    """Recompute framing for a finished job at a new viewport size.

    Panels and their order are read back from result.json; segmentation is
    not re-run. Returns the number of panels framed.
    """
    paths = job_paths(job_dir)
    result = load_json(paths.result_json)
    pages = result.get("pages", []) if isinstance(result, dict) else []
    cache = PanelImageCache(max_entries=int(cfg.render.get("cache_max_entries", 64))) if render else None

    framed_total = 0
    for record in pages:
        sequenced = _sequenced_from_record(record)
        framed = frame_panels(
            sequenced,
            int(record["width"]),
            int(record["height"]),
            viewport_width,
            viewport_height,
        )
        record["framed"] = framed_record(framed, viewport_width, viewport_height)
        framed_total += len(framed)
        write_json(paths.stage_panels_dir / f"{record['page_id']}.json", record)

        if render and cache is not None:
            page = Page(
                page_index=int(record["page_index"]),
                page_id=str(record["page_id"]),
                source_ref=str(record.get("source_ref", "")),
                image_path=str(record["image_path"]),
            )
            try:
                img = load_page_image(paths, page)
                render_page_panels(
                    paths, img, framed, viewport_width, viewport_height,
                    cache=cache, render_cfg=cfg.render,
                )
            except Exception as e:
                log.warning("%s: render failed: %s", page.page_id, e)
                record_error(paths, page_id=page.page_id, stage="render", message=str(e))
            finally:
                cache.evict_page(page.page_index)

    job = result.setdefault("job", {}) if isinstance(result, dict) else {}
    job["viewport"] = {"width": viewport_width, "height": viewport_height}
    job["reframed_at"] = utc_now_iso()
    write_json(paths.result_json, result)
    log.info("reframed %d panel(s) at %dx%d", framed_total, viewport_width, viewport_height)
    return framed_total
