from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from chatrelay.cancellation import CancelSignal
from chatrelay.config import GatewayConfig
from chatrelay.downstream import DownstreamChannel
from chatrelay.errors import (
    DownstreamClosed,
    DuplicateRequestError,
    RegistryConflictError,
    RequestCancelled,
    UpstreamError,
)
from chatrelay.logging import get_logger
from chatrelay.registry import InflightRequest, InflightRequestRegistry
from chatrelay.relay import RelayResult, StreamRelay, format_event
from chatrelay.schemas import ChatRequest
from chatrelay.telemetry import Telemetry
from chatrelay.upstream import UpstreamClient

log = get_logger(__name__)

_ID_ALLOCATION_ATTEMPTS = 5


class ExchangeState(str, Enum):
    CREATED = "created"
    REGISTERED = "registered"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class StopOutcome(str, Enum):
    STOPPED = "stopped"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"


class StopReason(str, Enum):
    STOPPED = "stopped"
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"
    SHUTDOWN = "shutdown"


@dataclass
class Exchange:
    """One chat request as seen by the task that owns it."""

    owner_id: str
    model: str
    payload: dict[str, Any]
    cancel: CancelSignal
    downstream: DownstreamChannel | None
    request_id: str = ""
    started_at: float = field(default_factory=time.monotonic)
    state: ExchangeState = ExchangeState.CREATED
    task: asyncio.Task[None] | None = None

    @property
    def mode(self) -> str:
        return "sync" if self.downstream is None else "stream"

    def disconnect(self) -> None:
        """The client connection went away; safe to call after completion."""
        self.cancel.cancel(StopReason.DISCONNECTED.value)
        if self.downstream is not None:
            self.downstream.close()


@dataclass(frozen=True, slots=True)
class CompletionResult:
    request_id: str
    model: str
    content: str
    finish_reason: str | None
    usage: dict[str, Any] | None


class LifecycleController:
    """Drives each chat request from registration to cleanup.

    Every exit path (upstream end, upstream error, downstream close, stop
    command, janitor expiry, shutdown) converges on a registry removal. The
    caller whose removal succeeds writes the terminal event and closes the
    downstream; every other caller finds nothing to do.
    """

    def __init__(
        self,
        config: GatewayConfig,
        registry: InflightRequestRegistry,
        upstream: UpstreamClient,
        relay: StreamRelay,
        telemetry: Telemetry,
    ) -> None:
        self._config = config
        self._registry = registry
        self._upstream = upstream
        self._relay = relay
        self._telemetry = telemetry
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    async def open_stream(self, request: ChatRequest, owner_id: str) -> Exchange:
        exchange = self._new_exchange(request, owner_id, streaming=True)
        await self._register(exchange)
        assert exchange.downstream is not None
        exchange.downstream.send_nowait(
            format_event("start", {"request_id": exchange.request_id, "model": exchange.model})
        )

        task = asyncio.create_task(
            self._run_stream(exchange), name=f"chat-stream-{exchange.request_id}"
        )
        exchange.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._arm_watchdog(exchange)
        return exchange

    async def complete(self, request: ChatRequest, owner_id: str) -> CompletionResult:
        exchange = self._new_exchange(request, owner_id, streaming=False)
        await self._register(exchange)
        with structlog.contextvars.bound_contextvars(
            request_id=exchange.request_id, owner_id=owner_id
        ):
            exchange.state = ExchangeState.STREAMING
            try:
                data = await self._upstream.complete(exchange.payload, exchange.cancel)
            except RequestCancelled as exc:
                exc.request_id = exchange.request_id
                await self._finish(exchange, ExchangeState.CANCELLED, exc.reason)
                raise
            except UpstreamError as exc:
                exc.request_id = exchange.request_id
                self._log_upstream_error(exc)
                await self._finish(exchange, ExchangeState.ERRORED, "upstream_error")
                raise
            except asyncio.CancelledError:
                await self._finish(exchange, ExchangeState.CANCELLED, StopReason.DISCONNECTED.value)
                raise
            except Exception:
                log.exception("completion_failed", state=exchange.state.value)
                await self._finish(exchange, ExchangeState.ERRORED, "internal_error")
                raise

            await self._finish(exchange, ExchangeState.COMPLETED, "completed")

        choice = (data.get("choices") or [{}])[0] or {}
        message = choice.get("message") or {}
        content = message.get("content") or choice.get("text") or ""
        return CompletionResult(
            request_id=exchange.request_id,
            model=str(data.get("model") or exchange.model),
            content=str(content),
            finish_reason=choice.get("finish_reason"),
            usage=data.get("usage"),
        )

    async def stop(self, request_id: str, requesting_owner_id: str) -> StopOutcome:
        entry = await self._registry.lookup(request_id)
        if entry is None:
            outcome = StopOutcome.NOT_FOUND
        elif entry.owner_id and entry.owner_id != requesting_owner_id:
            outcome = StopOutcome.FORBIDDEN
        elif await self._reap(entry, StopReason.STOPPED):
            outcome = StopOutcome.STOPPED
        else:
            # lost the race against another cleanup trigger
            outcome = StopOutcome.NOT_FOUND
        self._telemetry.record_stop(outcome.value)
        log.info(
            "stop_command",
            request_id=request_id,
            owner_id=requesting_owner_id,
            outcome=outcome.value,
        )
        return outcome

    async def stop_all(self, owner_id: str) -> list[str]:
        stopped: list[str] = []
        for entry in await self._registry.list_by_owner(owner_id):
            try:
                if await self._reap(entry, StopReason.STOPPED):
                    stopped.append(entry.request_id)
            except Exception:
                log.exception("stop_failed", request_id=entry.request_id, owner_id=owner_id)
        self._telemetry.record_stop("stopped_all")
        log.info("stop_all_command", owner_id=owner_id, stopped=len(stopped))
        return stopped

    async def expire(self, request_id: str) -> bool:
        entry = await self._registry.lookup(request_id)
        if entry is None:
            return False
        return await self._reap(entry, StopReason.EXPIRED)

    async def list_inflight(self, owner_id: str) -> list[str]:
        return [entry.request_id for entry in await self._registry.list_by_owner(owner_id)]

    async def shutdown(self) -> None:
        for entry in await self._registry.snapshot():
            await self._reap(entry, StopReason.SHUTDOWN)

        tasks = list(self._tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self._config.cancel_grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _new_exchange(self, request: ChatRequest, owner_id: str, streaming: bool) -> Exchange:
        payload = request.upstream_payload(self._config.default_model)
        downstream = (
            DownstreamChannel(maxsize=self._config.downstream_queue_size) if streaming else None
        )
        return Exchange(
            owner_id=owner_id,
            model=payload["model"],
            payload=payload,
            cancel=CancelSignal(),
            downstream=downstream,
        )

    async def _register(self, exchange: Exchange) -> InflightRequest:
        for _ in range(_ID_ALLOCATION_ATTEMPTS):
            candidate = str(uuid.uuid4())
            try:
                entry = await self._registry.register(
                    request_id=candidate,
                    owner_id=exchange.owner_id,
                    cancel_handle=exchange.cancel,
                    downstream=exchange.downstream,
                    started_at=exchange.started_at,
                )
            except DuplicateRequestError:
                log.error("request_id_collision", request_id=candidate)
                continue
            exchange.request_id = candidate
            exchange.state = ExchangeState.REGISTERED
            self._telemetry.set_inflight(len(self._registry))
            log.info(
                "request_registered",
                request_id=candidate,
                owner_id=exchange.owner_id,
                model=exchange.model,
                mode=exchange.mode,
            )
            return entry
        raise RegistryConflictError("could not allocate unique request_id")

    async def _run_stream(self, exchange: Exchange) -> None:
        structlog.contextvars.bind_contextvars(
            request_id=exchange.request_id, owner_id=exchange.owner_id
        )
        assert exchange.downstream is not None
        try:
            exchange.state = ExchangeState.STREAMING
            async with aclosing(self._upstream.stream(exchange.payload, exchange.cancel)) as chunks:
                result = await self._relay.relay(
                    exchange.request_id, chunks, exchange.downstream, exchange.cancel
                )
        except (RequestCancelled, DownstreamClosed):
            reason = exchange.cancel.reason or StopReason.DISCONNECTED.value
            await self._finish(exchange, ExchangeState.CANCELLED, reason)
        except UpstreamError as exc:
            self._log_upstream_error(exc)
            final = format_event(
                "error",
                {
                    "request_id": exchange.request_id,
                    "message": str(exc),
                    "upstream_status": exc.status_code,
                },
            )
            await self._finish(exchange, ExchangeState.ERRORED, "upstream_error", final)
        except asyncio.CancelledError:
            await self._finish(
                exchange,
                ExchangeState.CANCELLED,
                exchange.cancel.reason or StopReason.SHUTDOWN.value,
            )
            raise
        except Exception:
            log.exception("stream_failed", state=exchange.state.value)
            final = format_event(
                "error",
                {
                    "request_id": exchange.request_id,
                    "message": "internal error",
                    "upstream_status": None,
                },
            )
            await self._finish(exchange, ExchangeState.ERRORED, "internal_error", final)
        else:
            self._log_relay_result(exchange, result)
            final = format_event("done", {"request_id": exchange.request_id, "status": "completed"})
            await self._finish(exchange, ExchangeState.COMPLETED, "completed", final)

    async def _finish(
        self,
        exchange: Exchange,
        state: ExchangeState,
        outcome: str,
        final: bytes | None = None,
    ) -> bool:
        exchange.state = state
        removed = await self._registry.remove(exchange.request_id)
        exchange.cancel.cancel(outcome)
        if exchange.downstream is not None:
            exchange.downstream.close(final if removed else None)
        if removed:
            self._record_cleanup(exchange.mode, outcome, exchange.started_at)
        log.info(
            "request_finished",
            request_id=exchange.request_id,
            state=state.value,
            outcome=outcome,
            reaped_here=removed,
        )
        return removed

    async def _reap(self, entry: InflightRequest, reason: StopReason) -> bool:
        if not await self._registry.remove(entry.request_id):
            return False
        entry.cancel_handle.cancel(reason.value)
        if entry.downstream is not None:
            entry.downstream.close(
                format_event("stopped", {"request_id": entry.request_id, "reason": reason.value})
            )
        mode = "sync" if entry.downstream is None else "stream"
        self._record_cleanup(mode, reason.value, entry.started_at)
        log.info("request_reaped", request_id=entry.request_id, reason=reason.value)
        return True

    def _record_cleanup(self, mode: str, outcome: str, started_at: float) -> None:
        self._telemetry.set_inflight(len(self._registry))
        self._telemetry.record_request_outcome(mode=mode, outcome=outcome)
        self._telemetry.observe_duration(outcome, time.monotonic() - started_at)

    def _arm_watchdog(self, exchange: Exchange) -> None:
        loop = asyncio.get_running_loop()
        grace = self._config.cancel_grace_seconds

        def schedule() -> None:
            loop.call_later(grace, self._force_cancel, exchange)

        exchange.cancel.on_cancel(schedule)

    def _force_cancel(self, exchange: Exchange) -> None:
        task = exchange.task
        if task is None or task.done():
            return
        log.warning(
            "stream_force_cancelled",
            request_id=exchange.request_id,
            grace_seconds=self._config.cancel_grace_seconds,
        )
        task.cancel()

    def _log_upstream_error(self, exc: UpstreamError) -> None:
        self._telemetry.record_upstream_error(exc.status_code)
        log.warning("upstream_error", upstream_status=exc.status_code, message=str(exc))

    def _log_relay_result(self, exchange: Exchange, result: RelayResult) -> None:
        if result.first_frame_at is not None:
            self._telemetry.observe_first_frame(result.first_frame_at - exchange.started_at)
        log.info(
            "stream_completed",
            frames=result.frames_forwarded,
            malformed_frames=result.malformed_frames,
            sentinel_seen=result.sentinel_seen,
        )
