from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REQUESTS_TOTAL = Counter(
    "chatrelay_requests_total",
    "Chat request outcomes.",
    ["mode", "outcome"],
)
STOP_COMMANDS_TOTAL = Counter(
    "chatrelay_stop_commands_total",
    "Stop command results.",
    ["result"],
)
FRAMES_FORWARDED_TOTAL = Counter(
    "chatrelay_frames_forwarded_total",
    "Upstream frames forwarded downstream.",
)
MALFORMED_FRAMES_TOTAL = Counter(
    "chatrelay_malformed_frames_total",
    "Upstream frames dropped as malformed.",
)
UPSTREAM_ERRORS_TOTAL = Counter(
    "chatrelay_upstream_errors_total",
    "Upstream failures by HTTP status (or 'network').",
    ["status"],
)
JANITOR_REAPED_TOTAL = Counter(
    "chatrelay_janitor_reaped_total",
    "Stale in-flight requests force-terminated by the janitor.",
)

INFLIGHT_REQUESTS = Gauge("chatrelay_inflight_requests", "Registered in-flight requests.")

STREAM_DURATION_SECONDS = Histogram(
    "chatrelay_stream_duration_seconds",
    "Time from registration to cleanup.",
    ["outcome"],
)
FIRST_FRAME_SECONDS = Histogram(
    "chatrelay_first_frame_seconds",
    "Time from registration to the first forwarded frame.",
)


class Telemetry:
    def record_request_outcome(self, mode: str, outcome: str) -> None:
        REQUESTS_TOTAL.labels(mode=mode, outcome=outcome).inc()

    def record_stop(self, result: str) -> None:
        STOP_COMMANDS_TOTAL.labels(result=result).inc()

    def add_forwarded_frames(self, count: int) -> None:
        FRAMES_FORWARDED_TOTAL.inc(max(0, count))

    def record_malformed_frame(self) -> None:
        MALFORMED_FRAMES_TOTAL.inc()

    def record_upstream_error(self, status_code: int | None) -> None:
        status = "network" if status_code is None else str(status_code)
        UPSTREAM_ERRORS_TOTAL.labels(status=status).inc()

    def record_janitor_reap(self, count: int) -> None:
        JANITOR_REAPED_TOTAL.inc(max(0, count))

    def set_inflight(self, count: int) -> None:
        INFLIGHT_REQUESTS.set(max(0, count))

    def observe_duration(self, outcome: str, value: float) -> None:
        STREAM_DURATION_SECONDS.labels(outcome=outcome).observe(max(0.0, value))

    def observe_first_frame(self, value: float) -> None:
        FIRST_FRAME_SECONDS.observe(max(0.0, value))

    @staticmethod
    def scrape() -> tuple[bytes, str]:
        return generate_latest(), CONTENT_TYPE_LATEST
