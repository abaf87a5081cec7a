"""Pipeline, rendering, cache, config and CLI.

Tests cover:
1. PanelImageCache eviction
2. Framed panel rendering
3. Page ordering and cancellation with a worker pool
4. Page rasterizing from an images folder
5. End-to-end job on an images folder (run / reframe / validate)
"""
from __future__ import annotations

import json
import re
import threading
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from panel_engine import pipeline as pipeline_mod
from panel_engine.cache import PanelImageCache
from panel_engine.cli import main
from panel_engine.config import default_config, load_config
from panel_engine.framing import create_framed_panel
from panel_engine.job import create_job_dirs, init_job_outputs, new_job_id
from panel_engine.page_provider import PageProvider, load_page_image
from panel_engine.panel_debug import generate_annotated_page
from panel_engine.pipeline import (
    EnginePipeline,
    ProcessingCancelled,
    RunOptions,
    process_pages,
    resolve_viewport,
    reframe_job,
)
from panel_engine.render import fit_contain, render_framed_panel
from panel_engine.types import BoundingBox, PageData, Panel
from panel_engine.utils import load_json

from conftest import THREE_PANEL_RECTS, draw_comic_page


@pytest.fixture
def images_dir(tmp_path: Path) -> Path:
    folder = tmp_path / "chapter"
    folder.mkdir()
    draw_comic_page(400, 600, THREE_PANEL_RECTS).save(folder / "001.png")
    Image.new("RGB", (300, 200), (255, 255, 255)).save(folder / "002.png")
    return folder


def _page_seeds(three_panel_page: Image.Image, n: int) -> list[PageData]:
    return [PageData.from_image(i, three_panel_page) for i in range(n)]


# ═══════════════════════════════════════════════════════════════════════════════
# CACHE
# ═══════════════════════════════════════════════════════════════════════════════

class TestPanelImageCache:

    def test_get_or_create_calls_factory_once(self):
        cache = PanelImageCache()
        calls = []

        def factory() -> Image.Image:
            calls.append(1)
            return Image.new("RGB", (4, 4))

        a = cache.get_or_create("page-0-panel-0", factory)
        b = cache.get_or_create("page-0-panel-0", factory)
        assert a is b
        assert len(calls) == 1

    def test_explicit_eviction(self):
        cache = PanelImageCache()
        for pid in ("page-0-panel-0", "page-0-panel-1", "page-1-panel-0"):
            cache.put(pid, Image.new("RGB", (2, 2)))

        assert cache.evict("page-0-panel-1")
        assert not cache.evict("page-0-panel-1")
        assert cache.evict_page(0) == 1
        assert "page-1-panel-0" in cache
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0

    def test_lru_bound(self):
        cache = PanelImageCache(max_entries=2)
        cache.put("a", Image.new("RGB", (1, 1)))
        cache.put("b", Image.new("RGB", (1, 1)))
        cache.get("a")
        cache.put("c", Image.new("RGB", (1, 1)))
        assert "a" in cache and "c" in cache
        assert "b" not in cache

    def test_rejects_bad_bound(self):
        with pytest.raises(ValueError):
            PanelImageCache(max_entries=0)


# ═══════════════════════════════════════════════════════════════════════════════
# RENDERING
# ═══════════════════════════════════════════════════════════════════════════════

class TestRender:

    def test_fit_contain(self):
        assert fit_contain(400, 600, 800, 600) == (200, 0, 400, 600)
        assert fit_contain(800, 200, 400, 400) == (0, 150, 400, 100)

    def test_render_size_and_cache(self, three_panel_page: Image.Image):
        panel = Panel("page-0-panel-2", 0, BoundingBox(0, 293, 400, 307))
        framed = create_framed_panel(panel, 400, 600, 640, 480)
        cache = PanelImageCache()

        out = render_framed_panel(three_panel_page, framed, 640, 480, cache=cache)
        assert out.size == (640, 480)
        assert "page-0-panel-2" in cache

    def test_unsuppressed_background_is_black(self):
        page = Image.new("RGB", (100, 400), (255, 255, 255))
        panel = Panel("page-0-panel-0", 0, BoundingBox(0, 0, 100, 400), is_splash=True)
        framed = create_framed_panel(panel, 100, 400, 200, 300)
        assert framed.background_suppression.applied is False

        out = render_framed_panel(page, framed, 200, 300)
        # Scaled panel (200x800) overflows the viewport and covers it fully.
        assert np.asarray(out).min() == 255

    def test_suppressed_background_is_dimmed(self):
        page = Image.new("RGB", (200, 200), (255, 255, 255))
        panel = Panel("page-0-panel-0", 0, BoundingBox(0, 0, 200, 50))
        framed = create_framed_panel(panel, 200, 200, 200, 200)
        assert framed.background_suppression.applied is True

        out = np.asarray(render_framed_panel(page, framed, 200, 200, render_cfg={"dim_factor": 0.5}))
        # Panel band at rows 75..124 stays sharp; corners show the dimmed page.
        assert out[100, 100].tolist() == [255, 255, 255]
        assert out[5, 5, 0] < 200

    def test_tall_panel_resamples_visible_band_only(self, monkeypatch):
        page = Image.new("RGB", (1000, 1600), (255, 255, 255))
        panel = Panel("page-0-panel-0", 0, BoundingBox(0, 0, 41, 1600))
        framed = create_framed_panel(panel, 1000, 1600, 1280, 720)
        assert framed.is_splash is False

        real_resize = Image.Image.resize
        sizes: list[tuple[int, int]] = []

        def spy(self, size, *args, **kwargs):
            out = real_resize(self, size, *args, **kwargs)
            sizes.append(out.size)
            return out

        monkeypatch.setattr(Image.Image, "resize", spy)
        out = render_framed_panel(page, framed, 1280, 720)

        assert out.size == (1280, 720)
        assert sizes
        assert all(w <= 1280 and h <= 720 for w, h in sizes)
        # The visible band fills the viewport width.
        assert np.asarray(out)[10, 640].tolist() == [255, 255, 255]


class TestAnnotate:

    def test_annotated_page_keeps_size(self, three_panel_page: Image.Image):
        panels = [
            Panel("page-0-panel-0", 0, BoundingBox(0, 0, 205, 305)),
            Panel("page-0-panel-1", 0, BoundingBox(193, 0, 207, 305)),
        ]
        out = generate_annotated_page(three_panel_page, panels)
        assert out.size == three_panel_page.size
        assert out is not three_panel_page


# ═══════════════════════════════════════════════════════════════════════════════
# PROCESSING
# ═══════════════════════════════════════════════════════════════════════════════

class TestProcessPages:

    @pytest.mark.parametrize("workers", [1, 4])
    def test_output_order_matches_input(self, three_panel_page, workers):
        seeds = _page_seeds(three_panel_page, 6)
        done = process_pages(seeds, default_config(), "rtl", workers=workers)
        assert [p.page_index for p in done] == list(range(6))
        for p in done:
            assert [q.id for q in p.sequenced_panels] == [
                f"page-{p.page_index}-panel-1",
                f"page-{p.page_index}-panel-0",
                f"page-{p.page_index}-panel-2",
            ]

    @pytest.mark.parametrize("workers", [1, 3])
    def test_cancelled_before_start(self, three_panel_page, workers):
        event = threading.Event()
        event.set()
        with pytest.raises(ProcessingCancelled):
            process_pages(_page_seeds(three_panel_page, 3), default_config(), workers=workers, cancel_event=event)

    def test_cancel_mid_batch_keeps_finished_pages(self, three_panel_page, monkeypatch):
        real = pipeline_mod.detect_panels
        event = threading.Event()
        seen: list[int] = []

        def cancelling(page, detect_cfg=None):
            seen.append(page.page_index)
            if page.page_index == 2:
                event.set()
            return real(page, detect_cfg)

        monkeypatch.setattr(pipeline_mod, "detect_panels", cancelling)
        with pytest.raises(ProcessingCancelled) as exc:
            process_pages(_page_seeds(three_panel_page, 5), default_config(), workers=1, cancel_event=event)

        assert seen == [0, 1, 2]
        assert [p.page_index for p in exc.value.completed] == [0, 1, 2]

    def test_cancel_mid_batch_with_pool(self, three_panel_page, monkeypatch):
        real = pipeline_mod.detect_panels
        event = threading.Event()
        seen: list[int] = []

        def cancelling(page, detect_cfg=None):
            seen.append(page.page_index)
            if page.page_index == 1:
                event.set()
            else:
                # Page 0 holds its worker until page 1 has cancelled the batch.
                assert event.wait(timeout=5)
            return real(page, detect_cfg)

        monkeypatch.setattr(pipeline_mod, "detect_panels", cancelling)
        with pytest.raises(ProcessingCancelled) as exc:
            process_pages(_page_seeds(three_panel_page, 6), default_config(), workers=2, cancel_event=event)

        # Pages queued behind the first two never reach detection.
        assert sorted(seen) == [0, 1]
        completed = [p.page_index for p in exc.value.completed]
        assert completed == list(range(len(completed)))

    @pytest.mark.parametrize("workers", [1, 2])
    def test_on_error_skips_failing_page(self, three_panel_page, monkeypatch, workers):
        real = pipeline_mod.detect_panels

        def flaky(page, detect_cfg=None):
            if page.page_index == 1:
                raise RuntimeError("boom")
            return real(page, detect_cfg)

        monkeypatch.setattr(pipeline_mod, "detect_panels", flaky)
        failed: list[int] = []
        done = process_pages(
            _page_seeds(three_panel_page, 3),
            default_config(),
            workers=workers,
            on_error=lambda page, e: failed.append(page.page_index),
        )
        assert [p.page_index for p in done] == [0, 2]
        assert failed == [1]

    def test_error_propagates_without_handler(self, three_panel_page, monkeypatch):
        def broken(page, detect_cfg=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(pipeline_mod, "detect_panels", broken)
        with pytest.raises(RuntimeError):
            process_pages(_page_seeds(three_panel_page, 2), default_config())


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG
# ═══════════════════════════════════════════════════════════════════════════════

class TestConfig:

    def test_defaults(self):
        cfg = load_config(None)
        assert cfg.detect["edge_threshold"] == 200
        assert cfg.sequence["row_tolerance_px"] == 5
        assert cfg.render["blur_radius"] == 20

    def test_partial_file_merges_defaults(self, tmp_path: Path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"detect": {"edge_threshold": 120}}), encoding="utf-8")
        cfg = load_config(p)
        assert cfg.detect["edge_threshold"] == 120
        assert cfg.detect["min_area_ratio"] == 0.02
        assert cfg.frame["viewport_width"] == 1280

    def test_shipped_default_matches_builtin(self):
        shipped = Path(__file__).resolve().parent.parent / "config" / "default.json"
        assert load_config(shipped) == default_config()


# ═══════════════════════════════════════════════════════════════════════════════
# PAGE PROVIDER
# ═══════════════════════════════════════════════════════════════════════════════

class TestPageProvider:

    def test_images_folder_pages(self, tmp_path: Path, images_dir: Path):
        (images_dir / "notes.txt").write_text("skip me", encoding="utf-8")
        paths = create_job_dirs(tmp_path / "ws", "job-p")
        provider = PageProvider(input_path=str(images_dir), input_type="images", dpi=150, paths=paths)

        pages = list(provider.iter_pages())
        assert [p.page_id for p, _ in pages] == ["page_001", "page_002"]
        assert [p.source_ref for p, _ in pages] == ["chapter/001.png", "chapter/002.png"]
        assert pages[1][1].size == (300, 200)
        assert pages[1][1].mode == "RGB"
        assert (paths.job_dir / pages[0][0].image_path).exists()

    def test_stored_page_is_reused(self, tmp_path: Path, images_dir: Path):
        paths = create_job_dirs(tmp_path / "ws", "job-p")
        provider = PageProvider(input_path=str(images_dir), input_type="images", dpi=150, paths=paths)
        list(provider.iter_pages())

        # Source changes after the first pass are not picked up.
        Image.new("RGB", (10, 10), (0, 0, 0)).save(images_dir / "002.png")
        page, img = list(provider.iter_pages())[1]
        assert img.size == (300, 200)
        assert load_page_image(paths, page).size == (300, 200)

    def test_missing_folder(self, tmp_path: Path):
        paths = create_job_dirs(tmp_path / "ws", "job-p")
        provider = PageProvider(input_path=str(tmp_path / "nope"), input_type="images", dpi=150, paths=paths)
        with pytest.raises(ValueError):
            list(provider.iter_pages())

    def test_unknown_input_type(self, tmp_path: Path, images_dir: Path):
        paths = create_job_dirs(tmp_path / "ws", "job-p")
        provider = PageProvider(input_path=str(images_dir), input_type="cbz", dpi=150, paths=paths)
        with pytest.raises(ValueError):
            list(provider.iter_pages())


# ═══════════════════════════════════════════════════════════════════════════════
# END TO END
# ═══════════════════════════════════════════════════════════════════════════════

class TestEnginePipeline:

    def test_run_images_folder(self, tmp_path: Path, images_dir: Path):
        paths = create_job_dirs(tmp_path / "ws", "job-1")
        init_job_outputs(paths)
        opts = RunOptions(
            input_path=str(images_dir),
            input_type="images",
            direction="rtl",
            viewport_width=640,
            viewport_height=480,
            workers=2,
            render=True,
            debug=True,
        )
        EnginePipeline(paths=paths, cfg=default_config(), opts=opts).run(job_id="job-1")

        result = load_json(paths.result_json)
        assert result["job"]["finished"] is True
        pages = result["pages"]
        assert [p["page_id"] for p in pages] == ["page_001", "page_002"]

        first = pages[0]
        assert first["sequence"] == ["page-0-panel-1", "page-0-panel-0", "page-0-panel-2"]
        assert [f["id"] for f in first["framed"]["panels"]] == first["sequence"]
        assert first["framed"]["viewport"] == {"width": 640, "height": 480}

        second = pages[1]
        assert len(second["panels"]) == 1
        assert second["panels"][0]["is_splash"] is True

        metrics = load_json(paths.metrics_json)
        assert metrics["pages_total"] == 2
        assert metrics["pages_processed"] == 2
        assert metrics["panels_total"] == 4
        assert metrics["panels_rendered"] == 4

        assert (paths.panels_dir / "page-0-panel-2.png").exists()
        assert (paths.annotated_dir / "page_001.png").exists()
        assert (paths.stage_panels_dir / "page_002.json").exists()
        assert paths.errors_jsonl.read_text(encoding="utf-8") == ""

    def test_reframe_does_not_resegment(self, tmp_path: Path, images_dir: Path, monkeypatch):
        paths = create_job_dirs(tmp_path / "ws", "job-2")
        init_job_outputs(paths)
        opts = RunOptions(input_path=str(images_dir), input_type="images", viewport_width=640, viewport_height=480)
        EnginePipeline(paths=paths, cfg=default_config(), opts=opts).run(job_id="job-2")

        def no_detect(*args, **kwargs):
            raise AssertionError("segmentation must not run on reframe")

        monkeypatch.setattr(pipeline_mod, "detect_panels", no_detect)
        n = reframe_job(paths.job_dir, 1024, 768, cfg=default_config(), render=True)
        assert n == 4

        result = load_json(paths.result_json)
        framed = result["pages"][0]["framed"]
        assert framed["viewport"] == {"width": 1024, "height": 768}
        assert framed["panels"][0]["viewport_transform"]["scale"] == pytest.approx(1024 / 207)
        assert result["job"]["viewport"] == {"width": 1024, "height": 768}
        assert (paths.panels_dir / "page-1-panel-0.png").exists()

    def test_rasterize_failure_is_recorded(self, tmp_path: Path):
        paths = create_job_dirs(tmp_path / "ws", "job-3")
        init_job_outputs(paths)
        opts = RunOptions(input_path=str(tmp_path / "missing"), input_type="images")
        EnginePipeline(paths=paths, cfg=default_config(), opts=opts).run(job_id="job-3")

        errors = [json.loads(line) for line in paths.errors_jsonl.read_text(encoding="utf-8").splitlines()]
        assert errors and errors[0]["stage"] == "rasterize"
        assert load_json(paths.result_json)["pages"] == []
        assert load_json(paths.metrics_json)["pages_failed"] == 1

    @pytest.mark.parametrize("width, height", [(0, 480), (-5, 480), (640, 0)])
    def test_rejects_non_positive_viewport(self, tmp_path: Path, images_dir: Path, width, height):
        paths = create_job_dirs(tmp_path / "ws", "job-4")
        opts = RunOptions(
            input_path=str(images_dir), input_type="images", viewport_width=width, viewport_height=height
        )
        with pytest.raises(ValueError):
            EnginePipeline(paths=paths, cfg=default_config(), opts=opts)

    def test_viewport_falls_back_to_config(self):
        assert resolve_viewport(default_config(), None, None) == (1280, 720)
        assert resolve_viewport(default_config(), 300, None) == (300, 720)

    def test_job_id_is_dated_path(self):
        job_id = new_job_id()
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}/\d{2}-\d{2}-\d{2}__[0-9a-f]{8}", job_id)
        assert new_job_id() != job_id


class TestCli:

    def test_run_then_validate(self, tmp_path: Path, images_dir: Path, capsys):
        ws = tmp_path / "ws"
        rc = main([
            "run",
            "--input", str(images_dir),
            "--type", "images",
            "--workspace", str(ws),
            "--direction", "ltr",
            "--viewport-width", "800",
            "--viewport-height", "600",
        ])
        assert rc == 0
        job_dir = capsys.readouterr().out.strip().splitlines()[-1]

        result = load_json(Path(job_dir) / "result.json")
        assert result["pages"][0]["sequence"] == ["page-0-panel-0", "page-0-panel-1", "page-0-panel-2"]

        assert main(["validate", "--job-dir", job_dir]) == 0
        assert "OK" in capsys.readouterr().out

        assert main(["reframe", "--job-dir", job_dir, "--viewport-width", "320", "--viewport-height", "240"]) == 0
        assert "framed_panels=4" in capsys.readouterr().out

    def test_validate_flags_out_of_bounds_panel(self, tmp_path: Path, capsys):
        job_dir = tmp_path / "job"
        job_dir.mkdir()
        (job_dir / "metrics.json").write_text("{}", encoding="utf-8")
        (job_dir / "errors.jsonl").write_text("", encoding="utf-8")
        page = {
            "page_index": 0,
            "page_id": "page_001",
            "width": 100,
            "height": 100,
            "panels": [
                {"id": "page-0-panel-0", "bounding_box": {"x": 50, "y": 0, "width": 60, "height": 10}, "area": 600}
            ],
            "sequence": ["page-0-panel-0"],
            "framed": {},
        }
        (job_dir / "result.json").write_text(json.dumps({"job": {}, "pages": [page]}), encoding="utf-8")

        assert main(["validate", "--job-dir", str(job_dir)]) == 1
        assert "outside page" in capsys.readouterr().out

    def test_reframe_missing_job(self, tmp_path: Path, capsys):
        rc = main(["reframe", "--job-dir", str(tmp_path / "nope"), "--viewport-width", "10", "--viewport-height", "10"])
        assert rc == 1
        assert "reframe_failed" in capsys.readouterr().out

    @pytest.mark.parametrize("width", ["0", "-5"])
    def test_run_rejects_non_positive_viewport(self, tmp_path: Path, images_dir: Path, capsys, width):
        ws = tmp_path / "ws"
        rc = main([
            "run",
            "--input", str(images_dir),
            "--type", "images",
            "--workspace", str(ws),
            "--viewport-width", width,
            "--viewport-height", "600",
        ])
        assert rc == 1
        assert "run_failed: viewport must be positive" in capsys.readouterr().out
        assert not (ws / "jobs").exists()
