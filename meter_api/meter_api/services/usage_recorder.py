"""Append-only writer for the ``usage_logs`` audit table."""

from __future__ import annotations

import logging

from meter_core.errors import StorageError
from meter_core.metering.events import UsageEvent
from meter_core.state.repository import UsageLogRepository
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Persist usage events in their own transaction.

    Appends never share a session with the ledger, so a failed append
    cannot roll back a debit that has already committed.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, event: UsageEvent) -> None:
        """Write *event* and commit.

        Raises
        ------
        StorageError
            The audit store rejected the write.
        """
        try:
            async with self._session_factory() as session:
                await UsageLogRepository(session).append(event)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to record usage event {event.event_id}") from exc

        logger.debug(
            "Recorded usage event %s (user=%s, tokens=%d, status=%s)",
            event.event_id,
            event.user_id,
            event.tokens_used,
            event.status.value,
        )
