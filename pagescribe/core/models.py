from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_TRANSCRIPTION_PROMPT = """
Task: Transcribe the page from the provided book image.

- Reproduce the text exactly as it appears, without adding or omitting anything.
- Do not interpret the text, just transcribe it exactly as it appears.
- Use Markdown syntax to preserve the original formatting (e.g., headings, bold, italics, lists).
- Do not include triple backticks or any other code block markers in your response, unless the page contains code.
- Do not add any headers, topics or footers, such as `**Heading**` or `**Bullet points**`, keep just raw text.
- If the page contains an image, or a diagram, describe it in detail. Enclose the description in an <image> tag. For example:

<image>
This is an image of a cat.
</image>
"""


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class JobStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED_WITHIN_BUDGET = "completed_within_budget"
    COMPLETED_BUDGET_EXCEEDED = "completed_budget_exceeded"
    FAILED = "failed"


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Role
    content: str = ""
    thinking: str | None = None
    images: list[str] | None = Field(default=None, description="Base64-encoded images")


class GenerateOptions(BaseModel):
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    num_predict: int | None = None


class ChatRequest(BaseModel):
    model: str
    messages: list[ChatMessage]
    options: GenerateOptions = Field(default_factory=GenerateOptions)
    stream: bool = True

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class StreamRecord(BaseModel):
    """One line of an Ollama `/api/chat` response stream."""

    model_config = ConfigDict(extra="ignore")

    model: str
    created_at: str
    message: ChatMessage
    done: bool
    done_reason: str | None = None
    context: list[int] | None = None
    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None
    metrics: Any | None = None

    @property
    def role_tag(self) -> Role:
        return self.message.role

    @property
    def content_delta(self) -> str:
        return self.message.content


class ModelInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    size: int = 0
    digest: str = ""
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class PageResult:
    page_number: int
    endpoint_address: str
    status: JobStatus
    text: str = ""
    consumed_tokens: int = 0
    elapsed_seconds: float = 0.0
    output_path: Path | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in {
            JobStatus.COMPLETED_WITHIN_BUDGET,
            JobStatus.COMPLETED_BUDGET_EXCEEDED,
        }


@dataclass
class DocumentReport:
    source: str
    page_start: int
    page_end: int
    results: list[PageResult] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    error: str | None = None

    @property
    def failed_pages(self) -> list[int]:
        return [result.page_number for result in self.results if not result.succeeded]

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.failed_pages
