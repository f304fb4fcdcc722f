"""Domain exception hierarchy for the buildchat client core."""

from __future__ import annotations


class BuildChatError(RuntimeError):
    """Base class for all domain-level client errors."""


class TransportError(BuildChatError):
    """Raised for non-2xx responses and unreachable backends.

    ``status`` is ``None`` when no HTTP response was received at all.
    """

    def __init__(self, status: int | None, detail: str | None = None) -> None:
        self.status = status
        self.detail = detail
        if status is None:
            text = detail or "Backend unreachable."
        elif detail:
            text = f"HTTP {status}: {detail}"
        else:
            text = f"HTTP {status}"
        super().__init__(text)


class ProtocolMismatchError(BuildChatError):
    """Raised when a response has a different payload kind than expected."""

    def __init__(self, expected: str, actual: str | None) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Expected {expected} response but got {actual or 'no content type'}."
        )


class DecodeError(BuildChatError):
    """Raised when a payload cannot be parsed as structured data."""


class OperationCancelled(BuildChatError):
    """Raised when a user or the system aborts an in-flight operation."""


class TaskTimeoutError(BuildChatError):
    """Raised when a task did not reach a terminal state in time."""

    def __init__(self, task_id: str, attempts: int) -> None:
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(f"Task {task_id} timed out after {attempts} attempts.")


class TaskFailedError(BuildChatError):
    """Raised when the backend reports a task as failed."""

    def __init__(self, message: str, task_id: str | None = None) -> None:
        self.task_id = task_id
        super().__init__(message)


class OperationInProgressError(BuildChatError):
    """Raised when a conversation already has an active operation."""


class StageUnavailableError(BuildChatError):
    """Raised when a build stage is requested before its predecessor succeeded."""


class ConfigValidationError(BuildChatError):
    """Raised when configuration cannot be validated safely."""
