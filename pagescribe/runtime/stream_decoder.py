from __future__ import annotations

import codecs
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from pagescribe.core.errors import DecodeError
from pagescribe.core.models import StreamRecord


logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class StreamDecoder(Generic[RecordT]):
    """Incremental newline-delimited JSON decoder.

    Chunks may split a record at any byte, including inside a multi-byte
    UTF-8 character or an escape sequence. Valid JSON never carries a raw
    newline inside a string, so a newline always ends a record; a line that
    fails to parse is dropped rather than kept for the next chunk.

    One instance decodes one stream. After `finish()` it accepts no input.
    """

    def __init__(self, record_type: type[RecordT] = StreamRecord):  # type: ignore[assignment]
        self.record_type = record_type
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._finished = False
        self.dropped_lines = 0

    def _parse(self, line: str) -> RecordT:
        try:
            return self.record_type.model_validate_json(line)
        except ValidationError as exc:
            raise DecodeError(f"Invalid stream record: {exc.error_count()} error(s)") from exc

    def feed(self, chunk: bytes) -> list[RecordT]:
        if self._finished:
            raise RuntimeError("StreamDecoder already finished; use a new decoder per stream")

        self._buffer += self._text.decode(chunk)

        records: list[RecordT] = []
        start = 0
        while True:
            end = self._buffer.find("\n", start)
            if end < 0:
                break
            line = self._buffer[start:end].strip()
            start = end + 1
            if not line:
                continue
            try:
                records.append(self._parse(line))
            except DecodeError as exc:
                self.dropped_lines += 1
                logger.debug("Dropping stream line: %s; line=%r", exc, line)

        if start:
            self._buffer = self._buffer[start:]
        return records

    def finish(self) -> list[RecordT]:
        if self._finished:
            return []
        self._finished = True

        tail = (self._buffer + self._text.decode(b"", final=True)).strip()
        self._buffer = ""
        if not tail:
            return []
        try:
            return [self._parse(tail)]
        except DecodeError:
            self.dropped_lines += 1
            logger.debug("Trailing partial record not parsed: %r", tail)
            return []


async def decode_stream(
    chunks: AsyncIterable[bytes],
    record_type: type[RecordT] = StreamRecord,  # type: ignore[assignment]
) -> AsyncIterator[RecordT]:
    decoder: StreamDecoder[RecordT] = StreamDecoder(record_type)
    async for chunk in chunks:
        for record in decoder.feed(chunk):
            yield record
    for record in decoder.finish():
        yield record
