from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pagescribe.core.models import DEFAULT_TRANSCRIPTION_PROMPT


LOG_LEVELS = ("trace", "debug", "info", "warning", "warn", "error", "critical", "off")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
        populate_by_name=True,
    )

    ollama_urls: str = Field(default="http://localhost:11434", alias="PAGESCRIBE_OLLAMA_URLS")
    model: str = Field(default="qwen2.5vl:latest", alias="PAGESCRIBE_MODEL")
    prompt: str = Field(default=DEFAULT_TRANSCRIPTION_PROMPT, alias="PAGESCRIBE_PROMPT")
    max_tokens: int = Field(default=1024, alias="PAGESCRIBE_MAX_TOKENS")
    page_width: int = Field(default=1600, ge=1, alias="PAGESCRIBE_PAGE_WIDTH")

    output_dir: str = Field(default="output", alias="PAGESCRIBE_OUTPUT_DIR")
    keep_pages: bool = Field(default=False, alias="PAGESCRIBE_KEEP_PAGES")

    log_level: str = Field(default="error", alias="PAGESCRIBE_LOG_LEVEL")
    request_timeout_seconds: float | None = Field(default=None, gt=0.0, alias="PAGESCRIBE_REQUEST_TIMEOUT_SECONDS")

    @property
    def endpoint_tokens(self) -> list[str]:
        return [token.strip() for token in self.ollama_urls.split(",") if token.strip()]

    def resolve_path(self, path_value: str) -> Path:
        candidate = Path(path_value).expanduser()
        if candidate.is_absolute():
            return candidate
        return Path.cwd() / candidate

    @property
    def output_path(self) -> Path:
        return self.resolve_path(self.output_dir)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
