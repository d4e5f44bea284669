"""Account snapshot model.

An ``Account`` is a point-in-time, read-only view of a ``profiles`` row.
The authoritative balance always lives in the store; callers must not
derive new balances from a snapshot.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Tier(str, Enum):
    """Subscription level controlling the default token allowance."""

    FREE = "free"
    PRO = "pro"


class Account(BaseModel):
    """Read-only snapshot of a billable account."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1, description="Opaque, stable user identifier.")
    email: str | None = Field(default=None, description="Email used to match checkout sessions.")
    tier: Tier = Field(default=Tier.FREE)
    tokens_remaining: int = Field(..., ge=0, description="Consumable balance at read time.")
    billing_customer_id: str | None = None
    billing_subscription_id: str | None = None
    updated_at: datetime | None = None
