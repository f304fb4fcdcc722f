"""Typed stream events produced by the SSE decoder."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StartEvent:
    """The backend acknowledged the turn and assigned a canonical message id."""

    message_id: str


@dataclass(frozen=True)
class DataEvent:
    """One chunk of assistant output; ``thinking`` routes it to the thinking buffer."""

    content: str
    thinking: bool = False


@dataclass(frozen=True)
class EndEvent:
    message_id: str


@dataclass(frozen=True)
class ErrorEvent:
    """A failure report; ``recoverable`` ones (malformed payloads) do not end the stream."""

    message: str
    recoverable: bool = False


@dataclass(frozen=True)
class LogEvent:
    line: str


@dataclass(frozen=True)
class CompleteEvent:
    success: bool
    message: str = ""


ChatEvent = StartEvent | DataEvent | EndEvent | ErrorEvent
BuildEvent = LogEvent | CompleteEvent | ErrorEvent
StreamEvent = StartEvent | DataEvent | EndEvent | ErrorEvent | LogEvent | CompleteEvent
