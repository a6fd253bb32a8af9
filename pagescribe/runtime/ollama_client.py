from __future__ import annotations

import base64
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any, Protocol

import httpx

from pagescribe.core.endpoints import Endpoint
from pagescribe.core.errors import TransportError
from pagescribe.core.models import ChatMessage, ChatRequest, GenerateOptions, ModelInfo, Role, StreamRecord
from pagescribe.runtime.stream_decoder import decode_stream


logger = logging.getLogger(__name__)


class InferenceBackend(Protocol):
    @property
    def address(self) -> str: ...

    def chat_stream(self, request: ChatRequest) -> AsyncIterator[StreamRecord]: ...


def build_chat_request(*, model: str, prompt: str, image_png: bytes) -> ChatRequest:
    encoded = base64.b64encode(image_png).decode("utf-8")
    return ChatRequest(
        model=model,
        messages=[ChatMessage(role=Role.USER, content=prompt, images=[encoded])],
        options=GenerateOptions(temperature=0.0),
        stream=True,
    )


class OllamaClient:
    """Async client for one Ollama server.

    Streams are read with `httpx.AsyncClient.stream`, so leaving the
    `chat_stream` generator early (or closing it) closes the response and
    returns the connection to the pool.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint
        self.client = httpx.AsyncClient(
            base_url=endpoint.address.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    @property
    def address(self) -> str:
        return self.endpoint.address

    async def list_models(self) -> list[ModelInfo]:
        logger.debug("Listing models from %s/api/tags", self.address)
        try:
            response = await self.client.get("/api/tags")
        except httpx.HTTPError as exc:
            raise TransportError(f"Connection error to {self.address}: {exc}") from exc

        logger.debug("Response status: %s", response.status_code)
        if response.is_error:
            logger.error("Error response body: %s", response.text)
            raise TransportError(f"Ollama API error from {self.address}: HTTP {response.status_code}")

        payload: dict[str, Any] = response.json()
        models = [ModelInfo.model_validate(item) for item in payload.get("models") or []]
        logger.debug("Found %d models", len(models))
        for model in models:
            logger.debug("- %s (%d bytes)", model.name, model.size)
        return models

    async def chat_stream(self, request: ChatRequest) -> AsyncIterator[StreamRecord]:
        try:
            async with self.client.stream(
                "POST",
                "/api/chat",
                json=request.to_payload(),
                headers={"Accept": "application/x-ndjson"},
            ) as response:
                if response.is_error:
                    detail = (await response.aread()).decode("utf-8", errors="replace").strip()
                    raise TransportError(
                        f"HTTP {response.status_code} {response.reason_phrase} from {self.address}: {detail}"
                    )

                async with aclosing(decode_stream(response.aiter_bytes())) as records:
                    async for record in records:
                        logger.debug("Record from %s: done=%s", self.address, record.done)
                        yield record
        except httpx.HTTPError as exc:
            raise TransportError(f"Connection error to {self.address}: {exc}") from exc

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
