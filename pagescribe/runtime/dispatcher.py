from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn

from pagescribe.core.endpoints import Endpoint, EndpointPool
from pagescribe.core.errors import ConfigurationError, PersistenceError
from pagescribe.core.models import DocumentReport, JobStatus, PageResult
from pagescribe.core.output_layout import OutputLayout
from pagescribe.core.pdf_tools import PageSource, PdfPageSource
from pagescribe.runtime.inference_job import InferenceJob
from pagescribe.runtime.ollama_client import InferenceBackend


logger = logging.getLogger(__name__)


def resolve_page_range(page_count: int, page_start: int | None = None, page_end: int | None = None) -> tuple[int, int]:
    """Return the inclusive 1-based page range to process."""
    start = 1 if page_start is None else page_start
    if start < 1:
        raise ConfigurationError(f"Page start must be at least 1, got {start}")
    end = page_count if page_end is None else page_end
    if end < start:
        raise ConfigurationError("Page end cannot be less than page start")
    if end > page_count:
        raise ConfigurationError(f"Page end cannot be greater than page count ({page_count})")
    return start, end


@dataclass
class DispatchOptions:
    prompt: str
    max_tokens: int
    page_width: int = 1600
    page_start: int | None = None
    page_end: int | None = None
    keep_pages: bool = False
    show_content: bool = False
    verbose: bool = False


@dataclass
class _LaunchedPage:
    page_number: int
    endpoint: Endpoint
    image_path: Path | None
    task: asyncio.Task[PageResult]


class Dispatcher:
    """Fan the pages of a document out over the endpoint pool.

    Every page becomes its own task, launched without waiting on earlier
    pages. The pool only decides which endpoint a page goes to; there is no
    per-endpoint admission limit.
    """

    def __init__(
        self,
        pool: EndpointPool,
        backend_for: Callable[[Endpoint], InferenceBackend],
        layout: OutputLayout,
        options: DispatchOptions,
        console: Console | None = None,
    ):
        self.pool = pool
        self.backend_for = backend_for
        self.layout = layout
        self.options = options
        self.console = console or Console()

    def _show_page_content(self, source: PageSource, page_index: int) -> None:
        text = source.page_text(page_index)
        for line in text.splitlines():
            if line.strip():
                self.console.print(f"Content: {line!r}", markup=False)

    def _launch(self, source: PageSource, page_number: int) -> _LaunchedPage:
        page_index = page_number - 1
        if self.options.show_content:
            self._show_page_content(source, page_index)

        image_png = source.render_page_png(page_index, self.options.page_width)
        image_path: Path | None = self.layout.page_image_path(source.name, page_number)
        try:
            self.layout.write_bytes(image_path, image_png)
        except PersistenceError as exc:
            logger.warning("Page %d image not saved: %s", page_number, exc)
            image_path = None

        endpoint = self.pool.assign(page_index)
        logger.info("Sending page %d to %s", page_number, endpoint.address)

        job = InferenceJob(
            index=page_number,
            endpoint=endpoint,
            backend=self.backend_for(endpoint),
            image_png=image_png,
            prompt=self.options.prompt,
            max_tokens=self.options.max_tokens,
            output_path=self.layout.page_markdown_path(source.name, page_number),
        )
        task = asyncio.create_task(job.run(), name=f"{source.name}:page-{page_number}")
        return _LaunchedPage(page_number=page_number, endpoint=endpoint, image_path=image_path, task=task)

    @staticmethod
    async def _join(launched: _LaunchedPage) -> PageResult:
        try:
            return await launched.task
        except Exception as exc:  # noqa: BLE001
            logger.exception("Page %d crashed", launched.page_number)
            return PageResult(
                page_number=launched.page_number,
                endpoint_address=launched.endpoint.address,
                status=JobStatus.FAILED,
                error=str(exc) or exc.__class__.__name__,
            )

    def _report_page(self, result: PageResult) -> None:
        line = (
            f" - page {result.page_number} {result.endpoint_address}: {result.status.value}, "
            f"{result.consumed_tokens} tokens in {result.elapsed_seconds:.2f}s"
        )
        if result.error:
            line += f" ({result.error})"
        self.console.print(line, markup=False, highlight=False)

    def _remove_page_images(self, launched: list[_LaunchedPage]) -> None:
        for page in launched:
            if page.image_path is None:
                continue
            try:
                self.layout.remove(page.image_path)
            except PersistenceError as exc:
                logger.warning("%s", exc)

    async def process_document(self, source: PageSource) -> DocumentReport:
        page_start, page_end = resolve_page_range(
            source.page_count,
            self.options.page_start,
            self.options.page_end,
        )
        self.layout.ensure_output_dir()

        report = DocumentReport(source=source.name, page_start=page_start, page_end=page_end)
        started = time.perf_counter()
        launched: list[_LaunchedPage] = []

        progress = Progress(
            TextColumn("[bold green]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=True,
        )
        with progress:
            progress_task = progress.add_task("processing", total=page_end - page_start + 1)
            try:
                for page_number in range(page_start, page_end + 1):
                    launched.append(self._launch(source, page_number))
                    await asyncio.sleep(0)
            except Exception as exc:  # noqa: BLE001
                # Pages already in flight still finish; later pages are not launched.
                logger.error("Stopping %s at page %d: %s", source.name, page_number, exc)
                report.error = f"page {page_number}: {exc}"

            try:
                for page in launched:
                    result = await self._join(page)
                    report.results.append(result)
                    self._report_page(result)
                    progress.advance(progress_task)
            finally:
                if not self.options.keep_pages:
                    self._remove_page_images(launched)

        report.elapsed_seconds = max(0.0, time.perf_counter() - started)
        self.console.print(f"{source.name} processed in {report.elapsed_seconds:.2f}s", markup=False)
        return report

    async def run(self, pdf_paths: list[Path]) -> list[DocumentReport]:
        reports: list[DocumentReport] = []
        for pdf_path in pdf_paths:
            self.console.print(f"Loading {pdf_path.name}", markup=False)
            loaded = time.perf_counter()
            try:
                with PdfPageSource(pdf_path) as source:
                    if self.options.verbose:
                        self.console.print(
                            f"Document {pdf_path} loaded in {time.perf_counter() - loaded:.3f}s",
                            markup=False,
                        )
                    reports.append(await self.process_document(source))
            except (ConfigurationError, PersistenceError) as exc:
                logger.error("Skipping %s: %s", pdf_path.name, exc)
                self.console.print(f"{pdf_path.name}: {exc}", markup=False, style="red")
                reports.append(
                    DocumentReport(
                        source=pdf_path.name,
                        page_start=self.options.page_start or 1,
                        page_end=self.options.page_end or 0,
                        error=str(exc),
                    )
                )
        return reports
