from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from chatrelay.cancellation import CancelSignal
from chatrelay.errors import DownstreamClosed

_WAKE = object()


class DownstreamChannel:
    """Client-facing event queue drained by the HTTP streaming response.

    Writers block when ``maxsize`` events are pending (backpressure). The
    channel is closed exactly once; the terminal event given to ``close`` is
    delivered after everything already queued and is never subject to the
    size bound.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._final: bytes | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def send_nowait(self, event: bytes) -> None:
        if self._closed:
            raise DownstreamClosed("downstream channel is closed")
        self._queue.put_nowait(event)

    async def send(self, event: bytes, cancel: CancelSignal) -> None:
        if self._closed:
            raise DownstreamClosed("downstream channel is closed")
        await cancel.guard(self._queue.put(event))

    def close(self, final: bytes | None = None) -> bool:
        if self._closed:
            return False
        self._closed = True
        self._final = final
        if not self._queue.full():
            self._queue.put_nowait(_WAKE)
        return True

    async def events(self) -> AsyncIterator[bytes]:
        while True:
            if self._closed and self._queue.empty():
                break
            item = await self._queue.get()
            if item is _WAKE:
                continue
            yield item  # type: ignore[misc]
        if self._final is not None:
            final, self._final = self._final, None
            yield final
