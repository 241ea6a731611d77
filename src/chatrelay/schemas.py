from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_MESSAGES = 50
MAX_MESSAGE_CHARS = 10_000
MAX_TOTAL_CHARS = 50_000


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = Field(min_length=1, max_length=MAX_MESSAGE_CHARS)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1, max_length=MAX_MESSAGES)
    model: str | None = Field(default=None, min_length=1, max_length=256)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=1, le=8192)
    stream: bool = False

    @model_validator(mode="after")
    def total_length_within_limit(self) -> "ChatRequest":
        total = sum(len(message.content) for message in self.messages)
        if total > MAX_TOTAL_CHARS:
            raise ValueError(f"total message content exceeds {MAX_TOTAL_CHARS} characters")
        return self

    def upstream_payload(self, default_model: str) -> dict[str, Any]:
        return {
            "model": self.model or default_model,
            "messages": [message.model_dump() for message in self.messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": self.stream,
        }


class ChatCompletionResponse(BaseModel):
    request_id: str
    model: str
    content: str
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None


class StopRequest(BaseModel):
    request_id: str | None = Field(default=None, min_length=1, max_length=128)
    stop_all: bool = False


class StopResponse(BaseModel):
    stopped: list[str]
    count: int


class InflightResponse(BaseModel):
    request_ids: list[str]


class HealthResponse(BaseModel):
    status: str
    inflight_requests: int
    janitor_running: bool
