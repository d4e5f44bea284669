"""Unit tests for AccountRepository and UsageLogRepository.

These tests use a file-backed SQLite database via aiosqlite so they run
without a PostgreSQL instance and so that concurrent sessions share one
database (``:memory:`` gives every connection its own).

Covers:
- Profile creation and lookups by id, email, and subscription id
- Absolute field assignment via update()
- Conditional atomic_decrement, including concurrent debits
- Fresh balance reads via get_balance
- Usage log append and listing
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio
from meter_core.metering.events import UsageEvent, UsageStatus
from meter_core.models.account import Tier
from meter_core.state.repository import AccountRepository, UsageLogRepository
from meter_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(tmp_path: Path) -> async_sessionmaker[AsyncSession]:
    """Yield a session factory bound to a fresh on-disk SQLite database."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


async def _seed(
    factory: async_sessionmaker[AsyncSession],
    user_id: str = "user-1",
    *,
    email: str | None = "user1@example.com",
    tokens: int = 1_000,
) -> None:
    async with factory() as session:
        await AccountRepository(session).create(user_id, email=email, tokens_remaining=tokens)
        await session.commit()


async def _balance(factory: async_sessionmaker[AsyncSession], user_id: str = "user-1") -> int:
    async with factory() as session:
        account = await AccountRepository(session).get(user_id)
    assert account is not None
    return account.tokens_remaining


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class TestAccountLookups:
    """Verify profile creation and lookups."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, session_factory) -> None:
        await _seed(session_factory, tokens=250)

        async with session_factory() as session:
            account = await AccountRepository(session).get("user-1")

        assert account is not None
        assert account.user_id == "user-1"
        assert account.email == "user1@example.com"
        assert account.tier == Tier.FREE
        assert account.tokens_remaining == 250
        assert account.billing_subscription_id is None

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, session_factory) -> None:
        async with session_factory() as session:
            assert await AccountRepository(session).get("nobody") is None

    @pytest.mark.asyncio
    async def test_find_by_email(self, session_factory) -> None:
        await _seed(session_factory)
        async with session_factory() as session:
            repo = AccountRepository(session)
            found = await repo.find_by_email("user1@example.com")
            missing = await repo.find_by_email("other@example.com")

        assert found is not None and found.user_id == "user-1"
        assert missing is None

    @pytest.mark.asyncio
    async def test_find_by_subscription_id(self, session_factory) -> None:
        await _seed(session_factory)
        async with session_factory() as session:
            repo = AccountRepository(session)
            await repo.update("user-1", billing_subscription_id="sub_123")
            await session.commit()

        async with session_factory() as session:
            found = await AccountRepository(session).find_by_subscription_id("sub_123")

        assert found is not None
        assert found.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, session_factory) -> None:
        await _seed(session_factory)
        with pytest.raises(IntegrityError):
            await _seed(session_factory, "user-2", email="user1@example.com")

    @pytest.mark.asyncio
    async def test_create_rejects_negative_balance(self, session_factory) -> None:
        async with session_factory() as session:
            with pytest.raises(ValueError, match="non-negative"):
                await AccountRepository(session).create("user-1", tokens_remaining=-1)


# ---------------------------------------------------------------------------
# Absolute updates
# ---------------------------------------------------------------------------


class TestAccountUpdate:
    """Verify absolute assignment of reconciliation fields."""

    @pytest.mark.asyncio
    async def test_update_assigns_absolute_values(self, session_factory) -> None:
        await _seed(session_factory, tokens=3)
        async with session_factory() as session:
            updated = await AccountRepository(session).update(
                "user-1",
                tier=Tier.PRO,
                tokens_remaining=500_000,
                billing_customer_id="cus_1",
                billing_subscription_id="sub_1",
            )
            await session.commit()

        assert updated is True
        async with session_factory() as session:
            account = await AccountRepository(session).get("user-1")
        assert account is not None
        assert account.tier == Tier.PRO
        assert account.tokens_remaining == 500_000
        assert account.billing_customer_id == "cus_1"
        assert account.billing_subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_update_twice_is_idempotent(self, session_factory) -> None:
        await _seed(session_factory)
        for _ in range(2):
            async with session_factory() as session:
                await AccountRepository(session).update("user-1", tier=Tier.PRO, tokens_remaining=500_000)
                await session.commit()

        assert await _balance(session_factory) == 500_000

    @pytest.mark.asyncio
    async def test_update_missing_returns_false(self, session_factory) -> None:
        async with session_factory() as session:
            assert await AccountRepository(session).update("nobody", tier=Tier.FREE) is False

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, session_factory) -> None:
        async with session_factory() as session:
            with pytest.raises(ValueError, match="email"):
                await AccountRepository(session).update("user-1", email="x@example.com")

    @pytest.mark.asyncio
    async def test_update_rejects_negative_balance(self, session_factory) -> None:
        async with session_factory() as session:
            with pytest.raises(ValueError, match="non-negative"):
                await AccountRepository(session).update("user-1", tokens_remaining=-5)

    @pytest.mark.asyncio
    async def test_update_can_clear_subscription(self, session_factory) -> None:
        await _seed(session_factory)
        async with session_factory() as session:
            repo = AccountRepository(session)
            await repo.update("user-1", billing_subscription_id="sub_1")
            await repo.update("user-1", billing_subscription_id=None)
            await session.commit()

        async with session_factory() as session:
            account = await AccountRepository(session).get("user-1")
        assert account is not None
        assert account.billing_subscription_id is None


# ---------------------------------------------------------------------------
# Atomic decrement
# ---------------------------------------------------------------------------


class TestAtomicDecrement:
    """Verify the single-statement conditional debit."""

    @pytest.mark.asyncio
    async def test_strict_decrement_returns_new_balance(self, session_factory) -> None:
        await _seed(session_factory, tokens=1_000)
        async with session_factory() as session:
            balance = await AccountRepository(session).atomic_decrement("user-1", 300)
            await session.commit()

        assert balance == 700
        assert await _balance(session_factory) == 700

    @pytest.mark.asyncio
    async def test_strict_decrement_to_exactly_zero(self, session_factory) -> None:
        await _seed(session_factory, tokens=120)
        async with session_factory() as session:
            balance = await AccountRepository(session).atomic_decrement("user-1", 120)
            await session.commit()

        assert balance == 0

    @pytest.mark.asyncio
    async def test_strict_decrement_rejects_overdraft(self, session_factory) -> None:
        await _seed(session_factory, tokens=100)
        async with session_factory() as session:
            balance = await AccountRepository(session).atomic_decrement("user-1", 101)
            await session.commit()

        assert balance is None
        assert await _balance(session_factory) == 100

    @pytest.mark.asyncio
    async def test_get_balance_sees_committed_decrement(self, session_factory) -> None:
        await _seed(session_factory, tokens=100)
        async with session_factory() as reader:
            repo = AccountRepository(reader)
            assert (await repo.get("user-1")).tokens_remaining == 100

            async with session_factory() as writer:
                await AccountRepository(writer).atomic_decrement("user-1", 40)
                await writer.commit()

            assert await repo.get_balance("user-1") == 60
            assert await repo.get_balance("nobody") is None

    @pytest.mark.asyncio
    async def test_missing_account_returns_none(self, session_factory) -> None:
        async with session_factory() as session:
            assert await AccountRepository(session).atomic_decrement("nobody", 10) is None

    @pytest.mark.asyncio
    async def test_zero_amount_is_noop(self, session_factory) -> None:
        await _seed(session_factory, tokens=0)
        async with session_factory() as session:
            balance = await AccountRepository(session).atomic_decrement("user-1", 0)
            await session.commit()

        assert balance == 0

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self, session_factory) -> None:
        async with session_factory() as session:
            with pytest.raises(ValueError, match="non-negative"):
                await AccountRepository(session).atomic_decrement("user-1", -1)

    @pytest.mark.asyncio
    async def test_concurrent_strict_debits_never_overdraw(self, session_factory) -> None:
        """Ten debits of 150 against 1000 tokens: exactly six succeed."""
        await _seed(session_factory, tokens=1_000)

        async def _debit() -> int | None:
            async with session_factory() as session:
                balance = await AccountRepository(session).atomic_decrement("user-1", 150)
                await session.commit()
                return balance

        results = await asyncio.gather(*(_debit() for _ in range(10)))
        successes = [r for r in results if r is not None]

        assert len(successes) == 6
        assert await _balance(session_factory) == 1_000 - 6 * 150
        # Every committed debit observed a distinct balance.
        assert sorted(successes) == [100, 250, 400, 550, 700, 850]

    @pytest.mark.asyncio
    async def test_concurrent_debits_sum_exactly(self, session_factory) -> None:
        """Concurrent debits that fit the balance lose no updates."""
        await _seed(session_factory, tokens=10_000)

        async def _debit(amount: int) -> None:
            async with session_factory() as session:
                await AccountRepository(session).atomic_decrement("user-1", amount)
                await session.commit()

        amounts = [100, 250, 75, 500, 1_000, 25, 50]
        await asyncio.gather(*(_debit(a) for a in amounts))

        assert await _balance(session_factory) == 10_000 - sum(amounts)


# ---------------------------------------------------------------------------
# Usage log
# ---------------------------------------------------------------------------


class TestUsageLogRepository:
    """Verify append-only usage log access."""

    @pytest.mark.asyncio
    async def test_append_and_list(self, session_factory) -> None:
        event = UsageEvent(
            user_id="user-1",
            model="anthropic/claude-3.5-sonnet",
            tokens_used=812,
            latency_ms=1_450,
            status=UsageStatus.COMPLETED,
        )
        async with session_factory() as session:
            await UsageLogRepository(session).append(event)
            await session.commit()

        async with session_factory() as session:
            rows = await UsageLogRepository(session).list_recent("user-1")

        assert len(rows) == 1
        row = rows[0]
        assert row.id == event.event_id
        assert row.operation_type == "llm_query"
        assert row.model == "anthropic/claude-3.5-sonnet"
        assert row.tokens_used == 812
        assert row.latency_ms == 1_450
        assert row.status == "completed"
        assert row.error_type is None

    @pytest.mark.asyncio
    async def test_list_is_scoped_and_limited(self, session_factory) -> None:
        async with session_factory() as session:
            repo = UsageLogRepository(session)
            for i in range(5):
                await repo.append(
                    UsageEvent(user_id="user-1", model="m", tokens_used=i, status=UsageStatus.COMPLETED)
                )
            await repo.append(UsageEvent(user_id="user-2", model="m", status=UsageStatus.FAILED, error_type="x"))
            await session.commit()

        async with session_factory() as session:
            rows = await UsageLogRepository(session).list_recent("user-1", limit=3)

        assert len(rows) == 3
        assert all(row.user_id == "user-1" for row in rows)

    @pytest.mark.asyncio
    async def test_failed_event_records_error_type(self, session_factory) -> None:
        event = UsageEvent(
            user_id="user-1",
            model="m",
            status=UsageStatus.FAILED,
            error_type="upstream_transport_error",
        )
        async with session_factory() as session:
            await UsageLogRepository(session).append(event)
            await session.commit()

        async with session_factory() as session:
            rows = await UsageLogRepository(session).list_recent("user-1")

        assert rows[0].status == "failed"
        assert rows[0].tokens_used == 0
        assert rows[0].error_type == "upstream_transport_error"
