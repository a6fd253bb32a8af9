from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Protocol

import pypdfium2 as pdfium

from pagescribe.core.errors import ConfigurationError

try:
    import PIL.Image  # noqa: F401

    PIL_AVAILABLE = True
except ModuleNotFoundError:
    PIL_AVAILABLE = False


class PageSource(Protocol):
    """One document as a sequence of pages. Page indices are 0-based."""

    @property
    def name(self) -> str: ...

    @property
    def page_count(self) -> int: ...

    def render_page_png(self, page_index: int, target_width: int) -> bytes: ...

    def page_text(self, page_index: int) -> str: ...


def _ensure_pillow_available() -> None:
    if not PIL_AVAILABLE:
        raise RuntimeError(
            "Pillow is required to render PDF pages. Install the project dependencies first."
        )


def render_scale(page_width_points: float, target_width: int) -> float:
    if page_width_points <= 0:
        raise ValueError(f"Page has no width: {page_width_points}")
    return target_width / page_width_points


class PdfPageSource:
    def __init__(self, pdf_path: Path):
        self.path = pdf_path
        try:
            self.document = pdfium.PdfDocument(str(pdf_path))
        except (OSError, pdfium.PdfiumError) as exc:
            raise ConfigurationError(f"Cannot open PDF {pdf_path}: {exc}") from exc

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def page_count(self) -> int:
        return len(self.document)

    def render_page_png(self, page_index: int, target_width: int) -> bytes:
        _ensure_pillow_available()
        page = self.document[page_index]
        try:
            scale = render_scale(page.get_width(), target_width)
            pil_image = page.render(scale=scale).to_pil()
            buffer = BytesIO()
            pil_image.save(buffer, format="PNG")
            return buffer.getvalue()
        finally:
            page.close()

    def page_text(self, page_index: int) -> str:
        page = self.document[page_index]
        try:
            textpage = page.get_textpage()
            try:
                return textpage.get_text_range()
            finally:
                textpage.close()
        finally:
            page.close()

    def close(self) -> None:
        self.document.close()

    def __enter__(self) -> "PdfPageSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
