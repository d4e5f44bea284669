"""Domain models for the gateway core."""

from meter_core.models.account import Account, Tier

__all__ = ["Account", "Tier"]
