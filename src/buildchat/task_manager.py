"""Lifecycle tracking for background operation tasks (sends, dev servers)."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and anonymous asyncio tasks so none outlive their owner.

    A named task occupies its slot until it finishes; starting another task
    under a busy name is refused rather than silently replacing it.
    """

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create a task for ``coro`` and register it."""
        if name is not None and self.is_running(name):
            coro.close()
            raise RuntimeError(f"Task {name!r} is already running.")
        task = asyncio.create_task(coro, name=name)
        self.add(task, name=name)
        return task

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        """Register an existing task, optionally under a unique name."""
        if name is not None:
            self._named[name] = task
            task.add_done_callback(lambda done, key=name: self._release(key, done))
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)
        task.add_done_callback(self._log_exception)

    def _release(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]

    @staticmethod
    def _log_exception(task: asyncio.Task[Any]) -> None:
        """Log failures of background tasks so they are not silently lost."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.exception",
                extra={
                    "event": "task.exception",
                    "task_name": task.get_name(),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        return self._named.get(name)

    def is_running(self, name: str) -> bool:
        task = self._named.get(name)
        return task is not None and not task.done()

    async def cancel(self, name: str) -> None:
        """Cancel a named task and await its completion."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        pending = [t for t in [*self._named.values(), *self._anonymous] if not t.done()]
        for task in pending:
            task.cancel()
        results = await asyncio.gather(*pending, return_exceptions=True)
        for task, result in zip(pending, results):
            if isinstance(result, Exception):
                LOGGER.debug(
                    "task.cancel.error",
                    extra={
                        "event": "task.cancel.error",
                        "task_name": task.get_name(),
                        "error": str(result),
                    },
                )
        self._named.clear()
        self._anonymous.clear()
