from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from chatrelay.errors import RequestCancelled

T = TypeVar("T")


def _discard_outcome(future: asyncio.Future) -> None:
    # An abandoned operation may still fail while it unwinds.
    if not future.cancelled():
        future.exception()


class CancelSignal:
    """Cooperative cancellation token bound to one upstream call.

    ``cancel()`` may be called any number of times, from any task, before or
    after the call finished. Only the first call records a reason and runs the
    registered callbacks.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "stopped") -> bool:
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()
        return True

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first.

        On cancellation the inner operation is cancelled and
        ``RequestCancelled`` is raised. A result that is already available
        wins over a simultaneous cancellation.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RequestCancelled(self._reason or "stopped")

        operation = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({operation, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not operation.done():
                operation.add_done_callback(_discard_outcome)
                operation.cancel()

        if operation.done() and not operation.cancelled():
            return operation.result()
        raise RequestCancelled(self._reason or "stopped")
