from __future__ import annotations

import asyncio
import time

from chatrelay.lifecycle import LifecycleController
from chatrelay.logging import get_logger
from chatrelay.registry import InflightRequestRegistry
from chatrelay.telemetry import Telemetry

log = get_logger(__name__)


class Janitor:
    """Periodically force-terminates requests that outlived ``stale_after_seconds``.

    Staleness is coarse and best effort: an entry may live up to one interval
    past its deadline.
    """

    def __init__(
        self,
        registry: InflightRequestRegistry,
        controller: LifecycleController,
        telemetry: Telemetry,
        interval_seconds: float,
        stale_after_seconds: float,
    ) -> None:
        self._registry = registry
        self._controller = controller
        self._telemetry = telemetry
        self._interval_seconds = interval_seconds
        self._stale_after_seconds = stale_after_seconds

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="inflight-janitor")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def sweep(self, now: float | None = None) -> list[str]:
        ts = now if now is not None else time.monotonic()
        stale_ids = await self._registry.list_stale_since(ts - self._stale_after_seconds)
        reaped: list[str] = []
        for request_id in stale_ids:
            try:
                if await self._controller.expire(request_id):
                    reaped.append(request_id)
            except Exception:
                log.exception("janitor_expire_failed", request_id=request_id)
        if reaped:
            self._telemetry.record_janitor_reap(len(reaped))
            log.warning("janitor_reaped_stale_requests", count=len(reaped), request_ids=reaped)
        return reaped

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.sweep()
            except Exception:
                log.exception("janitor_sweep_failed")
