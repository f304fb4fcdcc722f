"""Cooperative cancellation tokens for in-flight requests and timers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
import inspect
from typing import TypeVar

from .exceptions import OperationCancelled

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation signal shared by everything an operation awaits.

    Cancelling the token makes the next guarded await (request, stream read,
    poll sleep) raise :class:`OperationCancelled`; the guarded coroutine itself
    is cancelled so that its ``finally`` blocks release connections and timers.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. Subsequent calls are no-ops."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless the token fires first."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except TimeoutError:
            return
        raise OperationCancelled(self.reason or "cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` but abort it as soon as the token fires."""
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled(self.reason or "cancelled")
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.create_task(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception:  # noqa: BLE001 - the cancellation outcome wins.
            pass
        raise OperationCancelled(self.reason or "cancelled")


async def guarded(token: CancelToken | None, awaitable: Awaitable[T]) -> T:
    """Await through ``token`` when one is supplied."""
    if token is None:
        return await awaitable
    return await token.guard(awaitable)
