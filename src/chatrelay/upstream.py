from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from chatrelay.cancellation import CancelSignal
from chatrelay.config import GatewayConfig
from chatrelay.errors import UpstreamError
from chatrelay.logging import get_logger

log = get_logger(__name__)

_ERROR_BODY_LIMIT = 2000
_END = object()


async def _next_chunk(chunks: AsyncIterator[bytes]) -> object:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return _END


class UpstreamClient:
    """HTTP client for the language-model provider's chat completion endpoint."""

    def __init__(
        self,
        config: GatewayConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = config.upstream_url
        headers = {"Content-Type": "application/json"}
        if config.upstream_api_key:
            headers["Authorization"] = f"Bearer {config.upstream_api_key}"
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(
                config.upstream_read_timeout_seconds,
                connect=config.upstream_connect_timeout_seconds,
            ),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _open(self, payload: dict[str, Any], cancel: CancelSignal) -> httpx.Response:
        request = self._client.build_request("POST", self._url, json=payload)
        try:
            response = await cancel.guard(self._client.send(request, stream=True))
        except httpx.TimeoutException as exc:
            raise UpstreamError(None, "timed out connecting to upstream") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(None, f"failed to reach upstream: {exc}") from exc

        if response.is_success:
            return response
        try:
            body = await cancel.guard(response.aread())
        except httpx.HTTPError:
            body = b""
        finally:
            await response.aclose()
        text = body.decode("utf-8", errors="replace")[:_ERROR_BODY_LIMIT]
        raise UpstreamError(response.status_code, text)

    async def stream(self, payload: dict[str, Any], cancel: CancelSignal) -> AsyncIterator[bytes]:
        """Yield raw response chunks from a streaming completion.

        Every wait races the cancel signal, so a stop unblocks the caller with
        ``RequestCancelled`` without waiting for the next upstream byte.
        """
        response = await self._open({**payload, "stream": True}, cancel)
        log.debug("upstream_stream_opened", status=response.status_code)
        chunks = response.aiter_bytes()
        try:
            while True:
                try:
                    chunk = await cancel.guard(_next_chunk(chunks))
                except httpx.TimeoutException as exc:
                    raise UpstreamError(None, "upstream read timed out") from exc
                except httpx.RequestError as exc:
                    raise UpstreamError(None, f"upstream connection lost: {exc}") from exc
                if chunk is _END:
                    return
                if chunk:
                    yield chunk  # type: ignore[misc]
        finally:
            await response.aclose()

    async def complete(self, payload: dict[str, Any], cancel: CancelSignal) -> dict[str, Any]:
        response = await self._open({**payload, "stream": False}, cancel)
        try:
            try:
                body = await cancel.guard(response.aread())
            except httpx.TimeoutException as exc:
                raise UpstreamError(None, "upstream read timed out") from exc
            except httpx.RequestError as exc:
                raise UpstreamError(None, f"upstream connection lost: {exc}") from exc
        finally:
            await response.aclose()
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise UpstreamError(response.status_code, "malformed upstream response") from exc
        if not isinstance(data, dict):
            raise UpstreamError(response.status_code, "malformed upstream response")
        return data
