from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True, slots=True)
class SseEvent:
    data: str
    event: str | None = None
    raw: bytes = b""

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_SENTINEL

    def json(self) -> dict[str, Any] | None:
        payload = self.data.strip()
        if not payload or payload == DONE_SENTINEL:
            return None
        try:
            parsed = json.loads(payload)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None


class SseParser:
    """Incremental SSE parser; events are dispatched on blank lines."""

    def __init__(self) -> None:
        self._buffer = ""
        self._event: str | None = None
        self._data: list[str] = []
        self._raw: list[str] = []

    def feed(self, text: str) -> list[SseEvent]:
        self._buffer += text
        events: list[SseEvent] = []
        while True:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            event = self._feed_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SseEvent]:
        events: list[SseEvent] = []
        if self._buffer:
            event = self._feed_line(self._buffer.rstrip("\r"))
            self._buffer = ""
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _feed_line(self, line: str) -> SseEvent | None:
        if not line:
            return self._dispatch()
        self._raw.append(line)
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value.strip() or None
        return None

    def _dispatch(self) -> SseEvent | None:
        if not self._data:
            self._event = None
            self._raw = []
            return None
        raw = ("\n".join(self._raw) + "\n\n").encode("utf-8")
        event = SseEvent(data="\n".join(self._data), event=self._event, raw=raw)
        self._event = None
        self._data = []
        self._raw = []
        return event


async def iter_sse_events(chunks: AsyncIterator[bytes]) -> AsyncIterator[SseEvent]:
    parser = SseParser()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    async for chunk in chunks:
        text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        for event in parser.feed(text):
            yield event
    for event in parser.flush():
        yield event


def encode_sse(data: Any, event: str | None = None) -> bytes:
    payload = data if isinstance(data, str) else json.dumps(data, separators=(",", ":"))
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {payload}\n\n".encode("utf-8")


def encode_done() -> bytes:
    return f"data: {DONE_SENTINEL}\n\n".encode("utf-8")
