"""Rasterizer adapter: turns a PDF or an image folder into job page images.

Each page is stored once as pages/<page_id>.png inside the job directory.
Re-running on the same job reads those PNGs back instead of rasterizing again.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, Iterator

from PIL import Image

from .job import JobPaths
from .types import Page
from .utils import ensure_dir

IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".tif", ".tiff"}

# (source_ref, render) where render produces the RGB page on demand.
PageSource = tuple[str, Callable[[], Image.Image]]


def page_id_for(page_index: int) -> str:
    return f"page_{page_index + 1:03d}"


def list_image_files(folder: Path) -> list[Path]:
    """Image files directly inside folder, sorted by name."""
    return sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTS)


def _open_rgb(path: Path) -> Image.Image:
    with Image.open(path) as im:
        return im.convert("RGB")


def _render_pdf_page(pdf_page: Any, matrix: Any) -> Image.Image:
    pix = pdf_page.get_pixmap(matrix=matrix, alpha=False)
    return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)


@dataclass(frozen=True)
class PageProvider:
    input_path: str
    input_type: str  # pdf|images
    dpi: int
    paths: JobPaths

    def iter_pages(self) -> Iterator[tuple[Page, Image.Image]]:
        if self.input_type == "pdf":
            sources = self._pdf_sources()
        elif self.input_type == "images":
            sources = self._folder_sources()
        else:
            raise ValueError(f"Unknown input_type: {self.input_type}")

        ensure_dir(self.paths.pages_dir)
        for page_index, (source_ref, render) in enumerate(sources):
            yield self._materialize(page_index, source_ref, render)

    def _materialize(
        self, page_index: int, source_ref: str, render: Callable[[], Image.Image]
    ) -> tuple[Page, Image.Image]:
        page_id = page_id_for(page_index)
        page = Page(
            page_index=page_index,
            page_id=page_id,
            source_ref=source_ref,
            image_path=f"pages/{page_id}.png",
        )
        stored = self.paths.job_dir / page.image_path
        if stored.exists():
            return page, _open_rgb(stored)

        img = render()
        img.save(stored, format="PNG")
        return page, img

    def _pdf_sources(self) -> Iterator[PageSource]:
        try:
            import fitz  # PyMuPDF
        except Exception as e:  # pragma: no cover
            raise RuntimeError("PyMuPDF is required for --type pdf. Install pymupdf.") from e

        pdf_path = Path(self.input_path)
        zoom = self.dpi / 72.0
        matrix = fitz.Matrix(zoom, zoom)
        # Pages render lazily, so the document stays open until the last one is consumed.
        with fitz.open(pdf_path) as doc:
            for n, pdf_page in enumerate(doc, start=1):
                yield f"{pdf_path.name}#page={n}", partial(_render_pdf_page, pdf_page, matrix)

    def _folder_sources(self) -> Iterator[PageSource]:
        folder = Path(self.input_path)
        if not folder.is_dir():
            raise ValueError(f"--type images expects a folder: {folder}")
        for image_file in list_image_files(folder):
            yield f"{folder.name}/{image_file.name}", partial(_open_rgb, image_file)


def load_page_image(paths: JobPaths, page: Page) -> Image.Image:
    return _open_rgb(paths.job_dir / page.image_path)
