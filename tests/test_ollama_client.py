from __future__ import annotations

import asyncio
import json
from contextlib import aclosing

import httpx
import pytest

from pagescribe.core.endpoints import Endpoint
from pagescribe.core.errors import TransportError
from pagescribe.runtime.ollama_client import OllamaClient, build_chat_request


def _line(content: str, done: bool = False) -> bytes:
    return (
        json.dumps(
            {
                "model": "m",
                "created_at": "2025-08-01T10:00:00Z",
                "message": {"role": "assistant", "content": content},
                "done": done,
            }
        )
        + "\n"
    ).encode("utf-8")


class TrackingStream(httpx.AsyncByteStream):
    def __init__(self, chunks: list[bytes]):
        self.chunks = chunks
        self.sent = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            self.sent += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def _client(handler) -> OllamaClient:
    endpoint = Endpoint(address="http://ollama.test:11434", model="qwen2.5vl:latest")
    return OllamaClient(endpoint, transport=httpx.MockTransport(handler))


def _request():
    return build_chat_request(model="qwen2.5vl:latest", prompt="Transcribe.", image_png=b"png")


async def _collect(client: OllamaClient) -> list[str]:
    async with client:
        return [record.content_delta async for record in client.chat_stream(_request())]


def test_chat_stream_posts_request_and_decodes_split_chunks() -> None:
    seen: dict = {}
    body = _line("Hello ") + _line("world", done=True)

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["accept"] = request.headers.get("accept")
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, stream=TrackingStream([body[:7], body[7:50], body[50:]]))

    contents = asyncio.run(_collect(_client(handler)))

    assert contents == ["Hello ", "world"]
    assert seen["url"] == "http://ollama.test:11434/api/chat"
    assert seen["accept"] == "application/x-ndjson"
    assert seen["payload"]["stream"] is True
    assert seen["payload"]["options"] == {"temperature": 0.0}
    assert seen["payload"]["messages"][0]["images"] == ["cG5n"]


def test_chat_stream_yields_unterminated_final_record() -> None:
    body = _line("a") + _line("b", done=True).rstrip(b"\n")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    assert asyncio.run(_collect(_client(handler))) == ["a", "b"]


def test_non_success_status_raises_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "model 'x' not found"})

    with pytest.raises(TransportError, match="HTTP 404 Not Found") as excinfo:
        asyncio.run(_collect(_client(handler)))
    assert "not found" in str(excinfo.value)


def test_connection_failure_raises_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError, match="Connection error"):
        asyncio.run(_collect(_client(handler)))


def test_closing_stream_early_closes_response() -> None:
    stream = TrackingStream([_line("one"), _line("two"), _line("three", done=True)])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    async def first_record() -> str:
        async with _client(handler) as client:
            async with aclosing(client.chat_stream(_request())) as records:
                async for record in records:
                    return record.content_delta
        return ""

    assert asyncio.run(first_record()) == "one"
    assert stream.sent == 1
    assert stream.closed is True


def test_list_models_parses_catalog() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(
            200,
            json={
                "models": [
                    {
                        "name": "qwen2.5vl:latest",
                        "size": 6_000_000_000,
                        "digest": "abc",
                        "details": {"parameter_size": "8.3B", "quantization_level": "Q4_K_M"},
                        "modified_at": "2025-01-01T00:00:00Z",
                    }
                ]
            },
        )

    async def run():
        async with _client(handler) as client:
            return await client.list_models()

    (model,) = asyncio.run(run())
    assert model.name == "qwen2.5vl:latest"
    assert model.details == {"parameter_size": "8.3B", "quantization_level": "Q4_K_M"}


def test_list_models_error_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    async def run():
        async with _client(handler) as client:
            return await client.list_models()

    with pytest.raises(TransportError, match="HTTP 500"):
        asyncio.run(run())
