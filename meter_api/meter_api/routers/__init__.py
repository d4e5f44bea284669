"""API router modules for the metered gateway."""

from __future__ import annotations

from meter_api.routers import billing, health, metrics, proxy, usage

__all__ = [
    "billing",
    "health",
    "metrics",
    "proxy",
    "usage",
]
