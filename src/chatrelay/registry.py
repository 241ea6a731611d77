from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field

from chatrelay.cancellation import CancelSignal
from chatrelay.downstream import DownstreamChannel
from chatrelay.errors import DuplicateRequestError


@dataclass(frozen=True, slots=True)
class InflightRequest:
    request_id: str
    owner_id: str
    cancel_handle: CancelSignal
    downstream: DownstreamChannel | None
    started_at: float = field(default_factory=time.monotonic)


class InflightRequestRegistry:
    """Single source of truth for which requests are in flight.

    All mutation goes through ``register`` and ``remove``; both run under one
    lock so concurrent triggers (client stop, downstream close, janitor, the
    request's own completion) cannot double-remove an entry. Removed ids are
    retired and can never be registered again.
    """

    def __init__(self, retired_capacity: int = 100_000) -> None:
        self._entries: dict[str, InflightRequest] = {}
        self._retired: OrderedDict[str, None] = OrderedDict()
        self._retired_capacity = retired_capacity
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def register(
        self,
        request_id: str,
        owner_id: str,
        cancel_handle: CancelSignal,
        downstream: DownstreamChannel | None,
        started_at: float | None = None,
    ) -> InflightRequest:
        async with self._lock:
            if request_id in self._entries or request_id in self._retired:
                raise DuplicateRequestError(request_id)
            entry = InflightRequest(
                request_id=request_id,
                owner_id=owner_id,
                cancel_handle=cancel_handle,
                downstream=downstream,
                started_at=started_at if started_at is not None else time.monotonic(),
            )
            self._entries[request_id] = entry
            return entry

    async def lookup(self, request_id: str) -> InflightRequest | None:
        async with self._lock:
            return self._entries.get(request_id)

    async def remove(self, request_id: str) -> bool:
        async with self._lock:
            entry = self._entries.pop(request_id, None)
            if entry is None:
                return False
            self._retired[request_id] = None
            while len(self._retired) > self._retired_capacity:
                self._retired.popitem(last=False)
            return True

    async def list_by_owner(self, owner_id: str) -> list[InflightRequest]:
        async with self._lock:
            return [entry for entry in self._entries.values() if entry.owner_id == owner_id]

    async def list_stale_since(self, threshold: float) -> list[str]:
        async with self._lock:
            return [
                request_id
                for request_id, entry in self._entries.items()
                if entry.started_at <= threshold
            ]

    async def snapshot(self) -> list[InflightRequest]:
        async with self._lock:
            return list(self._entries.values())
