from __future__ import annotations

import asyncio
import base64
from pathlib import Path

from pagescribe.core.endpoints import Endpoint
from pagescribe.core.errors import TransportError
from pagescribe.core.models import ChatMessage, ChatRequest, JobStatus, Role, StreamRecord
from pagescribe.runtime.inference_job import InferenceJob


def _record(content: str, done: bool = False) -> StreamRecord:
    return StreamRecord(
        model="m",
        created_at="2025-08-01T10:00:00Z",
        message=ChatMessage(role=Role.ASSISTANT, content=content),
        done=done,
    )


class FakeBackend:
    def __init__(self, records: list[StreamRecord], error: Exception | None = None):
        self.records = records
        self.error = error
        self.requests: list[ChatRequest] = []
        self.yielded = 0
        self.closed = False

    @property
    def address(self) -> str:
        return "http://fake:11434"

    async def chat_stream(self, request: ChatRequest):
        self.requests.append(request)
        try:
            for record in self.records:
                await asyncio.sleep(0)
                self.yielded += 1
                yield record
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def _job(tmp_path: Path, backend: FakeBackend, max_tokens: int = 100) -> InferenceJob:
    return InferenceJob(
        index=3,
        endpoint=Endpoint(address=backend.address, model="qwen2.5vl:latest"),
        backend=backend,
        image_png=b"\x89PNG fake",
        prompt="Transcribe this page.",
        max_tokens=max_tokens,
        output_path=tmp_path / "doc-page-000003.md",
    )


def test_budget_exceeded_stops_after_second_record(tmp_path: Path) -> None:
    backend = FakeBackend([_record("aaaaa"), _record("bbbbb"), _record("ccccc"), _record("", done=True)])
    job = _job(tmp_path, backend, max_tokens=8)

    result = asyncio.run(job.run())

    assert result.status == JobStatus.COMPLETED_BUDGET_EXCEEDED
    assert result.consumed_tokens == 10
    assert result.text == "aaaaabbbbb"
    assert backend.yielded == 2
    assert backend.closed is True
    assert (tmp_path / "doc-page-000003.md").read_text(encoding="utf-8") == "aaaaabbbbb"


def test_done_record_completes_within_budget(tmp_path: Path) -> None:
    backend = FakeBackend([_record("Hello, "), _record("world", done=True)])
    job = _job(tmp_path, backend, max_tokens=100)

    result = asyncio.run(job.run())

    assert result.status == JobStatus.COMPLETED_WITHIN_BUDGET
    assert result.succeeded
    assert result.text == "Hello, world"
    assert result.output_path == tmp_path / "doc-page-000003.md"
    assert result.output_path.read_text(encoding="utf-8") == "Hello, world"
    assert job.status == JobStatus.COMPLETED_WITHIN_BUDGET


def test_budget_equal_to_count_is_not_exceeded(tmp_path: Path) -> None:
    backend = FakeBackend([_record("12345"), _record("678", done=True)])

    result = asyncio.run(_job(tmp_path, backend, max_tokens=8).run())

    assert result.status == JobStatus.COMPLETED_WITHIN_BUDGET
    assert result.consumed_tokens == 8


def test_zero_budget_stops_at_first_non_empty_record(tmp_path: Path) -> None:
    backend = FakeBackend([_record(""), _record("x"), _record("y", done=True)])

    result = asyncio.run(_job(tmp_path, backend, max_tokens=0).run())

    assert result.status == JobStatus.COMPLETED_BUDGET_EXCEEDED
    assert result.text == "x"
    assert backend.yielded == 2


def test_budget_check_wins_over_done_on_same_record(tmp_path: Path) -> None:
    backend = FakeBackend([_record("too long", done=True)])

    result = asyncio.run(_job(tmp_path, backend, max_tokens=3).run())

    assert result.status == JobStatus.COMPLETED_BUDGET_EXCEEDED


def test_truncated_stream_fails_without_output(tmp_path: Path) -> None:
    backend = FakeBackend([_record("partial ")])

    result = asyncio.run(_job(tmp_path, backend).run())

    assert result.status == JobStatus.FAILED
    assert not result.succeeded
    assert "without a terminal record" in (result.error or "")
    assert result.output_path is None
    assert not (tmp_path / "doc-page-000003.md").exists()


def test_transport_error_marks_job_failed(tmp_path: Path) -> None:
    backend = FakeBackend([], error=TransportError("HTTP 500 Internal Server Error"))

    result = asyncio.run(_job(tmp_path, backend).run())

    assert result.status == JobStatus.FAILED
    assert result.error == "HTTP 500 Internal Server Error"
    assert result.endpoint_address == "http://fake:11434"


def test_persistence_error_marks_job_failed(tmp_path: Path) -> None:
    backend = FakeBackend([_record("text", done=True)])
    job = _job(tmp_path, backend)
    job.output_path = tmp_path / "missing-dir" / "page.md"

    result = asyncio.run(job.run())

    assert result.status == JobStatus.FAILED
    assert "Cannot write" in (result.error or "")
    assert result.text == "text"


def test_request_carries_prompt_image_and_deterministic_options(tmp_path: Path) -> None:
    backend = FakeBackend([_record("ok", done=True)])

    asyncio.run(_job(tmp_path, backend).run())

    (request,) = backend.requests
    payload = request.to_payload()
    assert payload["model"] == "qwen2.5vl:latest"
    assert payload["stream"] is True
    assert payload["options"] == {"temperature": 0.0}
    (message,) = payload["messages"]
    assert message["role"] == "user"
    assert message["content"] == "Transcribe this page."
    assert base64.b64decode(message["images"][0]) == b"\x89PNG fake"
