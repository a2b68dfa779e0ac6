"""
Cooperative cancellation for agent turns.

One token is created per turn and passed explicitly to the model call and to
every tool call. Nothing is cancelled behind a component's back: each
component checks the token (or awaits through ``guard``) at its suspension
points.
"""

import asyncio
import contextlib
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from .errors import OperationCancelled

logger = structlog.get_logger()

T = TypeVar("T")


class CancellationToken:
    """A one-shot cancellation signal shared by everything in a turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Operation cancelled") -> None:
        """Signal cancellation. Idempotent."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for callback in self._callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancellation callback failed", error=str(e))

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` when the token fires (immediately if it already has)."""
        if self.cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self._reason or "Operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins, the underlying task is cancelled and awaited so
        nothing is left running, then ``OperationCancelled`` is raised.
        """
        self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await waiter
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise OperationCancelled(self._reason or "Operation cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early on cancellation."""
        await self.guard(asyncio.sleep(delay))
