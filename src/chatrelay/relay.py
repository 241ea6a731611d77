from __future__ import annotations

import json
import time
from collections.abc import AsyncIterable
from dataclasses import dataclass, field
from typing import Any

from chatrelay.cancellation import CancelSignal
from chatrelay.downstream import DownstreamChannel
from chatrelay.logging import get_logger
from chatrelay.telemetry import Telemetry

log = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


def format_event(event: str, data: dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n".encode("utf-8")


@dataclass(frozen=True, slots=True)
class Frame:
    payload: dict[str, Any] | None
    done: bool = False


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _choices_well_formed(payload: dict[str, Any]) -> bool:
    choices = payload.get("choices")
    if choices is None:
        return True
    return isinstance(choices, list) and (not choices or isinstance(choices[0], dict))


def extract_content(payload: dict[str, Any]) -> str:
    choices = payload.get("choices") or []
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    choice = choices[0]
    delta = choice.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    if content:
        return str(content)
    text = choice.get("text")
    return str(text) if text else ""


class FrameDecoder:
    """Incremental decoder for line-delimited ``data:`` event frames.

    Raw chunks carry no alignment guarantee: one chunk may hold several frames
    or a fraction of one (including half of a multibyte character). Bytes are
    buffered until a newline completes a line.
    """

    def __init__(self, on_malformed=None) -> None:
        self._buffer = bytearray()
        self._on_malformed = on_malformed
        self.malformed = 0

    def feed(self, chunk: bytes) -> list[Frame]:
        self._buffer.extend(chunk)
        frames: list[Frame] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            frame = self._parse_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[Frame]:
        if not self._buffer:
            return []
        line = bytes(self._buffer)
        self._buffer.clear()
        frame = self._parse_line(line)
        return [frame] if frame is not None else []

    def _parse_line(self, raw: bytes) -> Frame | None:
        raw = raw.rstrip(b"\r")
        if not raw.strip():
            return None
        try:
            line = raw.decode("utf-8")
        except UnicodeDecodeError:
            self._drop(raw[:200].decode("utf-8", errors="replace"), "invalid utf-8")
            return None
        if not line.startswith("data:"):
            # SSE comments, event:/id:/retry: fields
            return None
        data = line[len("data:"):].strip()
        if data == DONE_SENTINEL:
            return Frame(payload=None, done=True)
        try:
            payload = json.loads(data, parse_constant=_reject_constant)
        except ValueError:
            self._drop(data[:200], "invalid json")
            return None
        if not isinstance(payload, dict):
            self._drop(data[:200], "not an object")
            return None
        if not _choices_well_formed(payload):
            self._drop(data[:200], "unexpected choices shape")
            return None
        return Frame(payload=payload)

    def _drop(self, excerpt: str, reason: str) -> None:
        self.malformed += 1
        log.warning("malformed_frame_dropped", reason=reason, excerpt=excerpt)
        if self._on_malformed is not None:
            self._on_malformed()


@dataclass
class RelayResult:
    frames_forwarded: int = 0
    malformed_frames: int = 0
    sentinel_seen: bool = False
    first_frame_at: float | None = None
    content_parts: list[str] = field(default_factory=list)

    @property
    def content(self) -> str:
        return "".join(self.content_parts)


class StreamRelay:
    def __init__(self, telemetry: Telemetry) -> None:
        self._telemetry = telemetry

    async def relay(
        self,
        request_id: str,
        chunks: AsyncIterable[bytes],
        downstream: DownstreamChannel,
        cancel: CancelSignal,
    ) -> RelayResult:
        """Forward upstream frames to ``downstream`` in arrival order.

        Returns once the sentinel frame is seen or upstream ends. Terminal
        events are written by the caller, not here.
        """
        decoder = FrameDecoder(on_malformed=self._telemetry.record_malformed_frame)
        result = RelayResult()
        try:
            async for chunk in chunks:
                for frame in decoder.feed(chunk):
                    if frame.done:
                        result.sentinel_seen = True
                        return result
                    await self._forward(request_id, frame, downstream, cancel, result)
            for frame in decoder.flush():
                if frame.done:
                    result.sentinel_seen = True
                    return result
                await self._forward(request_id, frame, downstream, cancel, result)
            return result
        finally:
            result.malformed_frames = decoder.malformed
            self._telemetry.add_forwarded_frames(result.frames_forwarded)

    async def _forward(
        self,
        request_id: str,
        frame: Frame,
        downstream: DownstreamChannel,
        cancel: CancelSignal,
        result: RelayResult,
    ) -> None:
        payload = frame.payload or {}
        content = extract_content(payload)
        await downstream.send(
            format_event("delta", {"request_id": request_id, "content": content, "frame": payload}),
            cancel,
        )
        if result.first_frame_at is None:
            result.first_frame_at = time.monotonic()
        result.frames_forwarded += 1
        if content:
            result.content_parts.append(content)
