"""Token quota ledger for per-user balances.

Two operations are exposed:

* :meth:`QuotaLedger.check_balance` runs before the upstream call and
  rejects users with an empty balance.  It is advisory: a concurrent
  request may drain the balance between check and debit.
* :meth:`QuotaLedger.debit` runs after the upstream call with the actual
  usage figure.  Every write is a conditional ``UPDATE ... RETURNING``,
  so concurrent debits serialise in the database and the balance can
  never be observed below zero.

Overdraft handling (usage larger than the remaining balance) follows
:class:`~meter_api.config.OverdraftPolicy`: ``clamp`` drains the balance to
zero, ``reject`` raises :class:`InsufficientBalance`.
"""

from __future__ import annotations

import logging

from meter_core.errors import AccountNotFound, InsufficientBalance, StorageError
from meter_core.models.account import Account
from meter_core.state.repository import AccountRepository
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meter_api.config import OverdraftPolicy

logger = logging.getLogger(__name__)


class DebitResult(BaseModel):
    """Outcome of a committed debit.

    ``debited`` is what actually left the balance; it is less than
    ``requested`` only when the overdraft was clamped.
    """

    user_id: str
    requested: int
    debited: int
    balance: int
    clamped: bool = False


class QuotaLedger:
    """Balance checks and atomic debits against the ``profiles`` table.

    Each call opens its own short-lived session and commits before
    returning, so a debit is durable independently of anything the caller
    does afterwards (notably the audit append).

    Parameters
    ----------
    session_factory:
        Factory for ``AsyncSession`` objects bound to the account store.
    overdraft_policy:
        Behaviour when usage exceeds the remaining balance.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        overdraft_policy: OverdraftPolicy = OverdraftPolicy.CLAMP,
    ) -> None:
        self._session_factory = session_factory
        self._overdraft_policy = overdraft_policy

    async def check_balance(self, user_id: str) -> Account:
        """Return the account if it has a positive balance.

        Raises
        ------
        AccountNotFound
            No profile exists for *user_id*.
        InsufficientBalance
            The balance is zero.
        StorageError
            The account store could not be read.
        """
        try:
            async with self._session_factory() as session:
                account = await AccountRepository(session).get(user_id)
        except SQLAlchemyError as exc:
            logger.error("Balance lookup failed for user %s: %s", user_id, exc)
            raise StorageError("Account store unavailable") from exc

        if account is None:
            raise AccountNotFound(user_id)
        if account.tokens_remaining <= 0:
            raise InsufficientBalance(user_id, account.tokens_remaining)
        return account

    async def debit(self, user_id: str, amount: int) -> DebitResult:
        """Atomically subtract *amount* tokens and return the new balance.

        The returned balance is the value persisted by the decrement
        statement itself, not a separately read snapshot.

        Raises
        ------
        AccountNotFound
            No profile exists for *user_id*.
        InsufficientBalance
            The balance cannot cover *amount* and the policy is ``reject``.
        StorageError
            The account store could not be written.
        """
        if amount < 0:
            raise ValueError("Debit amount must be non-negative")

        try:
            async with self._session_factory() as session:
                repo = AccountRepository(session)
                debited = amount
                balance = await repo.atomic_decrement(user_id, amount)

                # Drain whatever is left.  Each attempt is a conditional
                # decrement of the balance just read; a concurrent debit
                # makes it miss, and the loop re-reads.
                while balance is None:
                    current = await repo.get_balance(user_id)
                    if current is None:
                        raise AccountNotFound(user_id)
                    if self._overdraft_policy is OverdraftPolicy.REJECT:
                        raise InsufficientBalance(user_id, current, amount)
                    debited = min(amount, current)
                    balance = await repo.atomic_decrement(user_id, debited)

                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Debit of %d tokens failed for user %s: %s", amount, user_id, exc)
            raise StorageError("Account store unavailable") from exc

        clamped = debited < amount
        if clamped:
            logger.warning(
                "Usage of %d tokens exceeded balance for user %s; debited %d, balance clamped to %d",
                amount,
                user_id,
                debited,
                balance,
            )
        else:
            logger.debug("Debited %d tokens from user %s (remaining=%d)", amount, user_id, balance)

        return DebitResult(user_id=user_id, requested=amount, debited=debited, balance=balance, clamped=clamped)
