from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import Response, StreamingResponse

from chatrelay.config import GatewayConfig
from chatrelay.errors import RegistryConflictError, RequestCancelled, UpstreamError
from chatrelay.identity import caller_identity
from chatrelay.janitor import Janitor
from chatrelay.lifecycle import Exchange, LifecycleController, StopOutcome
from chatrelay.logging import get_logger
from chatrelay.registry import InflightRequestRegistry
from chatrelay.relay import StreamRelay
from chatrelay.schemas import (
    ChatCompletionResponse,
    ChatRequest,
    HealthResponse,
    InflightResponse,
    StopRequest,
    StopResponse,
)
from chatrelay.telemetry import Telemetry
from chatrelay.upstream import UpstreamClient

log = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass
class Services:
    config: GatewayConfig
    telemetry: Telemetry
    registry: InflightRequestRegistry
    upstream: UpstreamClient
    controller: LifecycleController
    janitor: Janitor


def _build_services(
    config: GatewayConfig,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    telemetry = Telemetry()
    registry = InflightRequestRegistry()
    upstream = UpstreamClient(config=config, transport=upstream_transport)
    controller = LifecycleController(
        config=config,
        registry=registry,
        upstream=upstream,
        relay=StreamRelay(telemetry=telemetry),
        telemetry=telemetry,
    )
    services = Services(
        config=config,
        telemetry=telemetry,
        registry=registry,
        upstream=upstream,
        controller=controller,
        janitor=Janitor(
            registry=registry,
            controller=controller,
            telemetry=telemetry,
            interval_seconds=config.janitor_interval_seconds,
            stale_after_seconds=config.stale_after_seconds,
        ),
    )
    telemetry.set_inflight(0)
    return services


def _event_stream(exchange: Exchange):
    assert exchange.downstream is not None

    async def body():
        try:
            async for event in exchange.downstream.events():
                yield event
        finally:
            # no-op when the exchange already finished
            exchange.disconnect()

    return body()


def create_app(
    config: GatewayConfig | None = None,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    app_config = config or GatewayConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = _build_services(config=app_config, upstream_transport=upstream_transport)
        app.state.services = services
        await services.janitor.start()
        log.info("gateway_started", upstream_url=app_config.upstream_url)
        try:
            yield
        finally:
            await services.janitor.stop()
            await services.controller.shutdown()
            await services.upstream.aclose()
            log.info("gateway_stopped")

    app = FastAPI(title="chatrelay", version="0.1.0", lifespan=lifespan)

    @app.post("/v1/chat", response_model=None)
    async def chat(
        request: ChatRequest,
        owner_id: str = Depends(caller_identity),
    ) -> StreamingResponse | ChatCompletionResponse:
        services: Services = app.state.services
        if request.stream:
            try:
                exchange = await services.controller.open_stream(request, owner_id)
            except RegistryConflictError as exc:
                raise HTTPException(status_code=503, detail=str(exc)) from exc
            return StreamingResponse(
                _event_stream(exchange),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        try:
            result = await services.controller.complete(request, owner_id)
        except RegistryConflictError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except UpstreamError as exc:
            raise HTTPException(
                status_code=502,
                detail={
                    "request_id": exc.request_id,
                    "message": str(exc),
                    "upstream_status": exc.status_code,
                },
            ) from exc
        except RequestCancelled as exc:
            raise HTTPException(
                status_code=409,
                detail={"request_id": exc.request_id, "status": "stopped", "reason": exc.reason},
            ) from exc

        return ChatCompletionResponse(
            request_id=result.request_id,
            model=result.model,
            content=result.content,
            finish_reason=result.finish_reason,
            usage=result.usage,
        )

    @app.post("/v1/chat/stop", response_model=StopResponse)
    async def stop(
        body: StopRequest,
        owner_id: str = Depends(caller_identity),
    ) -> StopResponse:
        services: Services = app.state.services
        if body.request_id:
            outcome = await services.controller.stop(body.request_id, owner_id)
            if outcome is StopOutcome.NOT_FOUND:
                raise HTTPException(
                    status_code=404,
                    detail="no in-flight request with this request_id",
                )
            if outcome is StopOutcome.FORBIDDEN:
                raise HTTPException(
                    status_code=403,
                    detail="request belongs to another caller",
                )
            return StopResponse(stopped=[body.request_id], count=1)

        if body.stop_all:
            stopped = await services.controller.stop_all(owner_id)
            return StopResponse(stopped=stopped, count=len(stopped))

        raise HTTPException(status_code=400, detail="request_id or stop_all is required")

    @app.get("/v1/chat/inflight", response_model=InflightResponse)
    async def inflight(owner_id: str = Depends(caller_identity)) -> InflightResponse:
        services: Services = app.state.services
        return InflightResponse(request_ids=await services.controller.list_inflight(owner_id))

    @app.get("/metrics")
    async def metrics() -> Response:
        body, content_type = Telemetry.scrape()
        return Response(content=body, media_type=content_type)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        services: Services = app.state.services
        return HealthResponse(
            status="ok",
            inflight_requests=len(services.registry),
            janitor_running=services.janitor.running,
        )

    return app
