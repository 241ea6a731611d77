from __future__ import annotations

import asyncio
import json
import threading
import time
from typing import Any

import httpx

from chatrelay.config import GatewayConfig
from chatrelay.lifecycle import Exchange, LifecycleController
from chatrelay.registry import InflightRequestRegistry
from chatrelay.relay import StreamRelay
from chatrelay.telemetry import Telemetry
from chatrelay.upstream import UpstreamClient

UPSTREAM_URL = "http://upstream.test/v1/chat/completions"


def chat_frame(content: str) -> bytes:
    payload = {"choices": [{"index": 0, "delta": {"content": content}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


DONE_FRAME = b"data: [DONE]\n\n"


class ScriptedUpstream:
    """MockTransport handler standing in for the model provider."""

    def __init__(
        self,
        chunks: list[bytes] | None = None,
        status_code: int = 200,
        body: bytes = b"",
        json_body: dict[str, Any] | None = None,
        hang: bool = False,
        delay_seconds: float = 0.0,
    ) -> None:
        self.chunks = chunks or []
        self.status_code = status_code
        self.body = body
        self.json_body = json_body
        self.hang = hang
        self.delay_seconds = delay_seconds

        self.payloads: list[dict[str, Any]] = []
        self.headers: list[httpx.Headers] = []
        self.started = threading.Event()
        self.cancel_observed = threading.Event()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        self.headers.append(request.headers)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, content=self.body)
        if self.json_body is not None:
            if self.hang:
                await self._hang()
            return httpx.Response(self.status_code, json=self.json_body)
        return httpx.Response(
            self.status_code,
            content=self._stream(),
            headers={"content-type": "text/event-stream"},
        )

    async def _stream(self):
        self.started.set()
        try:
            for chunk in self.chunks:
                if self.delay_seconds:
                    await asyncio.sleep(self.delay_seconds)
                yield chunk
            if self.hang:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancel_observed.set()
            raise

    async def _hang(self) -> None:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancel_observed.set()
            raise


def build_controller(
    upstream: ScriptedUpstream,
    relay: Any = None,
    **overrides: Any,
) -> tuple[LifecycleController, InflightRequestRegistry, GatewayConfig]:
    settings = {"upstream_url": UPSTREAM_URL, "cancel_grace_seconds": 0.5}
    settings.update(overrides)
    config = GatewayConfig(**settings)
    telemetry = Telemetry()
    registry = InflightRequestRegistry()
    controller = LifecycleController(
        config=config,
        registry=registry,
        upstream=UpstreamClient(config=config, transport=upstream.transport()),
        relay=relay or StreamRelay(telemetry=telemetry),
        telemetry=telemetry,
    )
    return controller, registry, config


def parse_event(raw: bytes) -> tuple[str, dict[str, Any]]:
    name = ""
    data: dict[str, Any] = {}
    for line in raw.decode("utf-8").splitlines():
        if line.startswith("event: "):
            name = line[len("event: "):]
        elif line.startswith("data: "):
            data = json.loads(line[len("data: "):])
    return name, data


def parse_events(raw: bytes) -> list[tuple[str, dict[str, Any]]]:
    return [parse_event(block.encode("utf-8")) for block in raw.decode("utf-8").split("\n\n") if block.strip()]


async def collect_events(exchange: Exchange, timeout: float = 5.0) -> list[tuple[str, dict[str, Any]]]:
    assert exchange.downstream is not None

    async def drain() -> list[tuple[str, dict[str, Any]]]:
        return [parse_event(event) async for event in exchange.downstream.events()]

    return await asyncio.wait_for(drain(), timeout=timeout)


async def wait_for_flag(flag: threading.Event, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if flag.is_set():
            return True
        await asyncio.sleep(0.01)
    return flag.is_set()
