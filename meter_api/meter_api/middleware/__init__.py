"""Middleware components for the metered gateway API."""

from __future__ import annotations

from meter_api.middleware.json_formatter import JSONFormatter
from meter_api.middleware.logging import RequestLoggingMiddleware
from meter_api.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "JSONFormatter",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
]
