from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass
class GatewayConfig:
    upstream_url: str = "http://127.0.0.1:8000/v1/chat/completions"
    upstream_api_key: str | None = None
    default_model: str = "Qwen/Qwen2.5-7B-Instruct"
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 120.0

    cancel_grace_seconds: float = 2.0
    downstream_queue_size: int = 256

    janitor_interval_seconds: float = 60.0
    stale_after_seconds: float = 600.0

    identity_header: str = "X-User-Id"


class Settings(BaseSettings):
    """Process configuration read from ``CHATRELAY_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHATRELAY_",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"
    log_json: bool = True

    upstream_url: str = GatewayConfig.upstream_url
    upstream_api_key: str | None = None
    default_model: str = GatewayConfig.default_model
    upstream_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    upstream_read_timeout_seconds: float = Field(default=120.0, gt=0)

    cancel_grace_seconds: float = Field(default=2.0, gt=0)
    downstream_queue_size: int = Field(default=256, ge=1)

    janitor_interval_seconds: float = Field(default=60.0, gt=0)
    stale_after_seconds: float = Field(default=600.0, gt=0)

    identity_header: str = "X-User-Id"

    def to_gateway_config(self) -> GatewayConfig:
        return GatewayConfig(
            upstream_url=self.upstream_url,
            upstream_api_key=self.upstream_api_key,
            default_model=self.default_model,
            upstream_connect_timeout_seconds=self.upstream_connect_timeout_seconds,
            upstream_read_timeout_seconds=self.upstream_read_timeout_seconds,
            cancel_grace_seconds=self.cancel_grace_seconds,
            downstream_queue_size=self.downstream_queue_size,
            janitor_interval_seconds=self.janitor_interval_seconds,
            stale_after_seconds=self.stale_after_seconds,
            identity_header=self.identity_header,
        )
