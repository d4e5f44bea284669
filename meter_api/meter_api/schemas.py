"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint payloads are validated and documented
in the OpenAPI specification.  Routers and services import from here to
avoid duplication.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Chat completion proxy
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    """A single message in a chat completion conversation.

    ``content`` is either plain text or a list of structured content parts
    (text, images) forwarded to the upstream unchanged.
    """

    model_config = ConfigDict(extra="allow")

    role: str = Field(..., min_length=1, max_length=64)
    content: str | list[dict[str, Any]]


class ChatCompletionRequest(BaseModel):
    """Body of ``POST /api/v1/chat/completions``.

    Only ``messages``, ``model`` and ``max_tokens`` are forwarded; other
    keys are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    messages: list[ChatMessage] = Field(..., min_length=1)
    model: str | None = Field(default=None, min_length=1, max_length=256)
    max_tokens: int | None = Field(default=None, gt=0)


class UsageMetadata(BaseModel):
    """Metering figures appended to every successful proxy response."""

    tokens_used: int
    tokens_remaining: int


class ErrorResponse(BaseModel):
    """Uniform error body for client-facing failures."""

    error: str


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class UsageLogResponse(BaseModel):
    """A single audit record from ``usage_logs``."""

    id: str
    operation_type: str
    model: str
    tokens_used: int
    latency_ms: int
    status: str
    error_type: str | None = None
    created_at: datetime


class UsageSummaryResponse(BaseModel):
    """Balance and recent usage for the authenticated user."""

    user_id: str
    tier: str
    tokens_remaining: int
    recent: list[UsageLogResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class WebhookAck(BaseModel):
    """Acknowledgement returned to the billing provider."""

    received: bool = True
