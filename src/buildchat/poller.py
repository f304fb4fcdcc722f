"""Bounded fixed-interval polling of backend tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
from typing import TYPE_CHECKING, Protocol, TypeVar

from .cancellation import CancelToken
from .exceptions import TaskFailedError, TaskTimeoutError
from .models import BuildTask, MessageTask, TaskStatus

if TYPE_CHECKING:
    from .client import ChatApiClient

LOGGER = logging.getLogger(__name__)


class PolledTask(Protocol):
    task_id: str
    status: TaskStatus

    @property
    def error_text(self) -> str | None: ...


TaskT = TypeVar("TaskT", bound=PolledTask)


async def poll_task(
    fetch: Callable[[str], Awaitable[TaskT]],
    task_id: str,
    *,
    interval: float = 1.0,
    max_attempts: int = 60,
    on_progress: Callable[[TaskT], None] | None = None,
    token: CancelToken | None = None,
) -> TaskT:
    """Fetch ``task_id`` until it succeeds, fails, or attempts run out.

    Fetch errors are not retried: they propagate on the attempt that raised
    them. ``on_progress`` sees every fetched snapshot, terminal ones included.
    The wait between attempts is cancellable through ``token``.
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        if token is not None:
            task = await token.guard(fetch(task_id))
        else:
            task = await fetch(task_id)
        LOGGER.debug(
            "poller.attempt",
            extra={
                "event": "poller.attempt",
                "task_id": task_id,
                "attempt": attempt,
                "status": task.status.value,
            },
        )
        if on_progress is not None:
            on_progress(task)

        if task.status is TaskStatus.SUCCESS:
            LOGGER.info(
                "poller.succeeded",
                extra={"event": "poller.succeeded", "task_id": task_id, "attempt": attempt},
            )
            return task
        if task.status is TaskStatus.FAILED:
            message = task.error_text or "Task failed"
            LOGGER.warning(
                "poller.failed",
                extra={
                    "event": "poller.failed",
                    "task_id": task_id,
                    "attempt": attempt,
                    "error": message,
                },
            )
            raise TaskFailedError(message, task_id=task_id)

        if attempt < attempts:
            if token is not None:
                await token.sleep(interval)
            else:
                await asyncio.sleep(interval)

    LOGGER.warning(
        "poller.timeout",
        extra={"event": "poller.timeout", "task_id": task_id, "attempts": attempts},
    )
    raise TaskTimeoutError(task_id, attempts)


class TaskPoller:
    """Poll the backend's message and build task endpoints with shared settings."""

    def __init__(
        self, client: ChatApiClient, interval: float = 1.0, max_attempts: int = 60
    ) -> None:
        self.client = client
        self.interval = interval
        self.max_attempts = max_attempts

    async def poll_message_task(
        self,
        task_id: str,
        *,
        on_progress: Callable[[MessageTask], None] | None = None,
        token: CancelToken | None = None,
    ) -> MessageTask:
        return await poll_task(
            self.client.get_message_task,
            task_id,
            interval=self.interval,
            max_attempts=self.max_attempts,
            on_progress=on_progress,
            token=token,
        )

    async def poll_build_task(
        self,
        task_id: str,
        *,
        on_progress: Callable[[BuildTask], None] | None = None,
        token: CancelToken | None = None,
    ) -> BuildTask:
        return await poll_task(
            self.client.get_build_task,
            task_id,
            interval=self.interval,
            max_attempts=self.max_attempts,
            on_progress=on_progress,
            token=token,
        )
