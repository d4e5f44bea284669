"""Repository classes providing access to the gateway state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes flush so that generated
defaults are populated; the caller is responsible for calling
``session.commit()``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from meter_core.metering.events import UsageEvent
from meter_core.models.account import Account, Tier
from meter_core.state.tables import DEFAULT_FREE_ALLOWANCE, ProfileTable, UsageLogTable

logger = logging.getLogger(__name__)

# Columns that reconciliation may assign.  ``tokens_remaining`` is allowed
# here only as an absolute value; relative changes go through
# ``atomic_decrement``.
_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "tier",
        "tokens_remaining",
        "billing_customer_id",
        "billing_subscription_id",
    }
)


def _to_account(row: ProfileTable) -> Account:
    return Account(
        user_id=row.id,
        email=row.email,
        tier=Tier(row.tier),
        tokens_remaining=row.tokens_remaining,
        billing_customer_id=row.billing_customer_id,
        billing_subscription_id=row.billing_subscription_id,
        updated_at=row.updated_at,
    )


def _monotonic_updated_at(now: datetime) -> Any:
    """SQL expression that never moves ``updated_at`` backwards."""
    return case((ProfileTable.updated_at > now, ProfileTable.updated_at), else_=now)


class AccountRepository:
    """Read and update operations for the ``profiles`` table.

    Balance debits are exposed only as :meth:`atomic_decrement`, a single
    conditional ``UPDATE ... RETURNING`` so the store is the sole
    serialisation point for concurrent debits.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        user_id: str,
        *,
        email: str | None = None,
        tier: Tier = Tier.FREE,
        tokens_remaining: int = DEFAULT_FREE_ALLOWANCE,
    ) -> Account:
        """Insert a new profile row (signup is normally handled upstream)."""
        if tokens_remaining < 0:
            raise ValueError("tokens_remaining must be non-negative")
        row = ProfileTable(
            id=user_id,
            email=email,
            tier=tier.value,
            tokens_remaining=tokens_remaining,
        )
        self._session.add(row)
        await self._session.flush()
        return _to_account(row)

    async def get(self, user_id: str) -> Account | None:
        """Return a snapshot of the account, or ``None`` if absent."""
        stmt = select(ProfileTable).where(ProfileTable.id == user_id)
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_account(row) if row is not None else None

    async def get_balance(self, user_id: str) -> int | None:
        """Return the committed balance, bypassing the identity map."""
        stmt = select(ProfileTable.tokens_remaining).where(ProfileTable.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> Account | None:
        """Return the account registered under *email*, if any."""
        stmt = select(ProfileTable).where(ProfileTable.email == email)
        result = await self._session.execute(stmt)
        row = result.scalars().first()
        return _to_account(row) if row is not None else None

    async def find_by_subscription_id(self, subscription_id: str) -> Account | None:
        """Return the account holding *subscription_id*, if any."""
        stmt = select(ProfileTable).where(ProfileTable.billing_subscription_id == subscription_id)
        result = await self._session.execute(stmt)
        row = result.scalars().first()
        return _to_account(row) if row is not None else None

    async def update(self, user_id: str, **fields: Any) -> bool:
        """Assign absolute values to the given columns and bump ``updated_at``.

        Returns ``True`` if a row was updated.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update profile fields: {sorted(unknown)}")
        if "tier" in fields and isinstance(fields["tier"], Tier):
            fields["tier"] = fields["tier"].value
        if fields.get("tokens_remaining") is not None and fields["tokens_remaining"] < 0:
            raise ValueError("tokens_remaining must be non-negative")

        now = datetime.now(UTC)
        stmt = (
            update(ProfileTable)
            .where(ProfileTable.id == user_id)
            .values(**fields, updated_at=_monotonic_updated_at(now))
            .returning(ProfileTable.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def atomic_decrement(self, user_id: str, amount: int) -> int | None:
        """Decrement the balance by *amount* in one statement.

        Parameters
        ----------
        user_id:
            Account to debit.
        amount:
            Non-negative number of tokens to remove.  The update only
            matches if the balance covers it.

        Returns
        -------
        int | None
            The persisted balance after the update, or ``None`` when no row
            matched (account missing, or balance below *amount*).
        """
        if amount < 0:
            raise ValueError("Debit amount must be non-negative")

        now = datetime.now(UTC)
        stmt = (
            update(ProfileTable)
            .where(ProfileTable.id == user_id, ProfileTable.tokens_remaining >= amount)
            .values(
                tokens_remaining=ProfileTable.tokens_remaining - amount,
                updated_at=_monotonic_updated_at(now),
            )
            .returning(ProfileTable.tokens_remaining)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class UsageLogRepository:
    """Insert-only access to the ``usage_logs`` audit table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, event: UsageEvent) -> UsageLogTable:
        """Persist a single usage event."""
        row = UsageLogTable(
            id=event.event_id,
            user_id=event.user_id,
            operation_type=event.operation.value,
            model=event.model,
            tokens_used=event.tokens_used,
            latency_ms=event.latency_ms,
            status=event.status.value,
            error_type=event.error_type,
            created_at=event.timestamp,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_recent(self, user_id: str, limit: int = 20) -> list[UsageLogTable]:
        """Return the user's most recent usage rows, newest first."""
        stmt = (
            select(UsageLogTable)
            .where(UsageLogTable.user_id == user_id)
            .order_by(UsageLogTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
