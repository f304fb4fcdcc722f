"""Incremental decoder for the ``text/event-stream`` wire format.

Chunk boundaries from the transport never line up with protocol lines, so the
decoder keeps the trailing partial line (and any split UTF-8 sequence) between
calls to :meth:`SSEDecoder.feed`. Feeding the same bytes split any other way
yields the same events in the same order.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterable, Callable
import codecs
from dataclasses import dataclass
import json
import logging
from typing import Any

from .events import (
    BuildEvent,
    ChatEvent,
    CompleteEvent,
    DataEvent,
    EndEvent,
    ErrorEvent,
    LogEvent,
    StartEvent,
    StreamEvent,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_EVENT = "data"


@dataclass(frozen=True)
class RawEvent:
    """One flushed SSE event before its payload is interpreted."""

    event: str
    data: str


class SSEDecoder:
    """Turn byte chunks into :class:`RawEvent` values in arrival order."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._data: str | None = None

    def feed(self, chunk: bytes) -> list[RawEvent]:
        """Consume one chunk and return every event it completed."""
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[RawEvent] = []
        for line in lines:
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[RawEvent]:
        """Drain the buffer at end of stream, treating EOF as a blank line."""
        self._buffer += self._decoder.decode(b"", final=True)
        events: list[RawEvent] = []
        if self._buffer:
            tail, self._buffer = self._buffer, ""
            for line in tail.split("\n"):
                event = self._process_line(line)
                if event is not None:
                    events.append(event)
        event = self._process_line("")
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, line: str) -> RawEvent | None:
        if line.endswith("\r"):
            line = line[:-1]

        if not line:
            event: RawEvent | None = None
            if self._data is not None:
                event = RawEvent(event=self._event or DEFAULT_EVENT, data=self._data)
            self._event = None
            self._data = None
            return event

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value.strip() or None
        elif field == "data":
            # Last data line before the blank line wins.
            self._data = value
        return None


def _load_payload(raw: RawEvent) -> dict[str, Any] | ErrorEvent:
    try:
        payload = json.loads(raw.data)
    except (json.JSONDecodeError, ValueError) as exc:
        LOGGER.warning(
            "sse.decode.failed",
            extra={"event": "sse.decode.failed", "sse_event": raw.event, "reason": str(exc)},
        )
        return ErrorEvent(
            message=f"Malformed {raw.event} event payload: {exc}", recoverable=True
        )
    if not isinstance(payload, dict):
        LOGGER.warning(
            "sse.decode.failed",
            extra={"event": "sse.decode.failed", "sse_event": raw.event, "reason": "not an object"},
        )
        return ErrorEvent(
            message=f"Malformed {raw.event} event payload: expected an object",
            recoverable=True,
        )
    return payload


def _string_field(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def to_chat_event(raw: RawEvent) -> ChatEvent:
    """Interpret a raw event from a chat message stream."""
    payload = _load_payload(raw)
    if isinstance(payload, ErrorEvent):
        return payload

    kind = raw.event
    if kind in {"start", "end"}:
        message_id = _string_field(payload, "message_id")
        if not message_id:
            return ErrorEvent(message=f"{kind} event without message_id", recoverable=True)
        return StartEvent(message_id) if kind == "start" else EndEvent(message_id)

    if kind == "error":
        text = (
            _string_field(payload, "message")
            or _string_field(payload, "error")
            or _string_field(payload, "detail")
            or "Stream error"
        )
        return ErrorEvent(message=text)

    if kind == "data":
        content = payload.get("content")
        thinking = payload.get("thinking")
        if isinstance(content, str):
            return DataEvent(content=content, thinking=thinking is True)
        if isinstance(thinking, str):
            return DataEvent(content=thinking, thinking=True)
        return ErrorEvent(message="data event without content", recoverable=True)

    return ErrorEvent(message=f"Unknown event type {kind!r}", recoverable=True)


def to_build_event(raw: RawEvent) -> BuildEvent:
    """Interpret a raw event from a build command stream."""
    payload = _load_payload(raw)
    if isinstance(payload, ErrorEvent):
        return payload

    kind = _string_field(payload, "type") or raw.event
    if kind == "log":
        line = payload.get("line", "")
        return LogEvent(line=line if isinstance(line, str) else str(line))
    if kind == "complete":
        return CompleteEvent(
            success=bool(payload.get("success", False)),
            message=_string_field(payload, "message") or "",
        )
    if kind == "error":
        return ErrorEvent(message=_string_field(payload, "message") or "Build stream error")
    return ErrorEvent(message=f"Unknown build event type {kind!r}", recoverable=True)


async def decode_stream(
    chunks: AsyncIterable[bytes],
    convert: Callable[[RawEvent], StreamEvent],
) -> AsyncGenerator[StreamEvent, None]:
    """Lazily decode an async byte-chunk iterable into typed events."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for raw in decoder.feed(chunk):
            yield convert(raw)
    for raw in decoder.flush():
        yield convert(raw)
