"""SQLAlchemy 2.0 ORM table definitions for the gateway state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Balance granted to a profile at signup and after a subscription ends.
DEFAULT_FREE_ALLOWANCE = 10_000


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all gateway tables."""


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class ProfileTable(Base):
    """Billable account: tier, consumable token balance, billing identifiers.

    Rows are created at signup by the identity platform and are never
    deleted by the gateway.  ``tokens_remaining`` is mutated only through
    :meth:`AccountRepository.atomic_decrement` (debits) and absolute
    assignments from billing reconciliation.
    """

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    tokens_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_FREE_ALLOWANCE)
    billing_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    billing_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("tokens_remaining >= 0", name="ck_profiles_tokens_non_negative"),
        CheckConstraint("tier IN ('free', 'pro')", name="ck_profiles_tier"),
        Index("ix_profiles_billing_subscription", "billing_subscription_id"),
        Index("ix_profiles_billing_customer", "billing_customer_id"),
    )


# ---------------------------------------------------------------------------
# Usage audit log
# ---------------------------------------------------------------------------


class UsageLogTable(Base):
    """Append-only audit record of each metered upstream call attempt.

    Rows are inserted once and never updated or deleted.
    """

    __tablename__ = "usage_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    model: Mapped[str] = mapped_column(String(256), nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('completed', 'failed')", name="ck_usage_logs_status"),
        Index("ix_usage_logs_user_created", "user_id", "created_at"),
    )
