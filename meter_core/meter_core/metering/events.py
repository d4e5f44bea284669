"""Usage event definitions for the metering audit trail.

Each event records one metered upstream call attempt.  Events are
immutable once constructed and are appended to the ``usage_logs`` table
exactly once.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class OperationKind(str, Enum):
    """Kinds of metered operations."""

    LLM_QUERY = "llm_query"


class UsageStatus(str, Enum):
    """Completion status of a metered call attempt."""

    COMPLETED = "completed"
    FAILED = "failed"


class UsageEvent(BaseModel):
    """A single audit record for a metered call attempt.

    Attributes
    ----------
    event_id:
        Unique identifier for this event.
    user_id:
        The account that made the call.
    operation:
        The kind of metered operation.
    model:
        Upstream model selector used for the call.
    tokens_used:
        Tokens debited for the call (0 when nothing was debited).
    latency_ms:
        Wall-clock latency of the upstream call in milliseconds.
    status:
        ``completed`` or ``failed``.
    error_type:
        Short machine-readable failure reason for ``failed`` events.
    timestamp:
        When the event was created (UTC).
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: f"use-{uuid.uuid4().hex[:16]}")
    user_id: str
    operation: OperationKind = OperationKind.LLM_QUERY
    model: str
    tokens_used: int = Field(default=0, ge=0)
    latency_ms: int = Field(default=0, ge=0)
    status: UsageStatus
    error_type: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
