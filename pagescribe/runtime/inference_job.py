from __future__ import annotations

import logging
import time
from contextlib import aclosing
from pathlib import Path

from pagescribe.core.endpoints import Endpoint
from pagescribe.core.errors import PersistenceError, TransportError
from pagescribe.core.models import JobStatus, PageResult
from pagescribe.core.output_layout import OutputLayout
from pagescribe.runtime.ollama_client import InferenceBackend, build_chat_request


logger = logging.getLogger(__name__)


class InferenceJob:
    """Transcribe one page on one endpoint.

    The job consumes records until the endpoint sends `done` or the running
    character count goes strictly above `max_tokens`, whichever comes first.
    A budget of 0 therefore stops after the first non-empty record.
    """

    def __init__(
        self,
        *,
        index: int,
        endpoint: Endpoint,
        backend: InferenceBackend,
        image_png: bytes,
        prompt: str,
        max_tokens: int,
        output_path: Path,
    ):
        self.index = index
        self.endpoint = endpoint
        self.backend = backend
        self.image_png = image_png
        self.prompt = prompt
        self.max_tokens = max_tokens
        self.output_path = output_path

        self.accumulated_text = ""
        self.consumed_tokens = 0
        self.status = JobStatus.PENDING
        self.error: str | None = None

    async def _consume(self) -> JobStatus:
        request = build_chat_request(model=self.endpoint.model, prompt=self.prompt, image_png=self.image_png)

        async with aclosing(self.backend.chat_stream(request)) as records:
            async for record in records:
                self.status = JobStatus.STREAMING
                delta = record.content_delta
                self.accumulated_text += delta
                self.consumed_tokens += len(delta)
                logger.debug("Page %d: done=%s, text=%r", self.index, record.done, delta)

                if self.consumed_tokens > self.max_tokens:
                    logger.info("Page %d: max tokens reached, stopping stream", self.index)
                    return JobStatus.COMPLETED_BUDGET_EXCEEDED
                if record.done:
                    return JobStatus.COMPLETED_WITHIN_BUDGET

        raise TransportError(f"Stream from {self.endpoint.address} ended without a terminal record")

    async def run(self) -> PageResult:
        started = time.perf_counter()
        output_path: Path | None = None
        try:
            self.status = await self._consume()
            output_path = OutputLayout.write_text(self.output_path, self.accumulated_text)
        except (TransportError, PersistenceError) as exc:
            self.status = JobStatus.FAILED
            self.error = str(exc)
            logger.error("Page %d failed on %s: %s", self.index, self.endpoint.address, exc)

        return PageResult(
            page_number=self.index,
            endpoint_address=self.endpoint.address,
            status=self.status,
            text=self.accumulated_text,
            consumed_tokens=self.consumed_tokens,
            elapsed_seconds=max(0.0, time.perf_counter() - started),
            output_path=output_path,
            error=self.error,
        )
