"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from meter_core.state.database import get_engine
from meter_core.state.repository import AccountRepository, UsageLogRepository

__all__ = [
    "AccountRepository",
    "UsageLogRepository",
    "get_engine",
]
