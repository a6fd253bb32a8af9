from __future__ import annotations

import re
from pathlib import Path

from pagescribe.core.errors import PersistenceError


def _slug(value: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "-", value.strip())
    cleaned = cleaned.strip("-")
    cleaned = re.sub(r"-+", "-", cleaned)
    return cleaned or "document"


def document_stem(source_name: str) -> str:
    return _slug(Path(source_name).stem)


class OutputLayout:
    """Per-page artifact paths under one output directory.

    Every page owns `<stem>-page-NNNNNN.png` and `<stem>-page-NNNNNN.md`, so
    concurrent jobs never write the same file.
    """

    def __init__(self, output_dir: Path):
        self.output_dir = output_dir

    def ensure_output_dir(self) -> Path:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot create output directory {self.output_dir}: {exc}") from exc
        return self.output_dir

    def page_stem(self, source_name: str, page_number: int) -> str:
        return f"{document_stem(source_name)}-page-{page_number:06d}"

    def page_image_path(self, source_name: str, page_number: int) -> Path:
        return self.output_dir / f"{self.page_stem(source_name, page_number)}.png"

    def page_markdown_path(self, source_name: str, page_number: int) -> Path:
        return self.output_dir / f"{self.page_stem(source_name, page_number)}.md"

    @staticmethod
    def write_bytes(path: Path, payload: bytes) -> Path:
        try:
            path.write_bytes(payload)
        except OSError as exc:
            raise PersistenceError(f"Cannot write {path}: {exc}") from exc
        return path

    @staticmethod
    def write_text(path: Path, text: str) -> Path:
        try:
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Cannot write {path}: {exc}") from exc
        return path

    @staticmethod
    def remove(path: Path) -> None:
        try:
            path.unlink()
        except OSError as exc:
            raise PersistenceError(f"Cannot remove {path}: {exc}") from exc
