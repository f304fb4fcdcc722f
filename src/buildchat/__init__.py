"""Top-level package for the buildchat streaming and task-polling client."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .build_pipeline import BuildPipeline, BuildStage
    from .cancellation import CancelToken
    from .client import ChatApiClient, EventStream, Polled, Streamed
    from .config import build_client, load_config
    from .coordinator import ConversationCoordinator, OperationHandle
    from .exceptions import (
        BuildChatError,
        ConfigValidationError,
        DecodeError,
        OperationCancelled,
        OperationInProgressError,
        ProtocolMismatchError,
        StageUnavailableError,
        TaskFailedError,
        TaskTimeoutError,
        TransportError,
    )
    from .poller import TaskPoller, poll_task
    from .sse import SSEDecoder
    from .state import ConversationState, StateManager

_EXPORTS: dict[str, str] = {
    "BuildPipeline": ".build_pipeline",
    "BuildStage": ".build_pipeline",
    "CancelToken": ".cancellation",
    "ChatApiClient": ".client",
    "EventStream": ".client",
    "Polled": ".client",
    "Streamed": ".client",
    "build_client": ".config",
    "load_config": ".config",
    "ConversationCoordinator": ".coordinator",
    "OperationHandle": ".coordinator",
    "BuildChatError": ".exceptions",
    "ConfigValidationError": ".exceptions",
    "DecodeError": ".exceptions",
    "OperationCancelled": ".exceptions",
    "OperationInProgressError": ".exceptions",
    "ProtocolMismatchError": ".exceptions",
    "StageUnavailableError": ".exceptions",
    "TaskFailedError": ".exceptions",
    "TaskTimeoutError": ".exceptions",
    "TransportError": ".exceptions",
    "TaskPoller": ".poller",
    "poll_task": ".poller",
    "SSEDecoder": ".sse",
    "ConversationState": ".state",
    "StateManager": ".state",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import buildchat`` stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)
