"""Tests for meter_api/meter_api/middleware/prometheus.py and logging.py

Covers:
- Path normalisation (UUIDs, hex IDs, numeric segments)
- Skipped paths (metrics, docs, favicon)
- HTTP and gateway counters observed through the app
- Request logging: correlation IDs and credential masking
"""

from __future__ import annotations

import logging

import pytest
from prometheus_client import REGISTRY

from meter_api.middleware.prometheus import _SKIP_PATHS, _normalise_path

from conftest import AUTH_HEADERS


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------


class TestPathNormalisation:
    """Verify _normalise_path collapses path parameters."""

    def test_uuid_collapsed(self) -> None:
        path = "/api/v1/usage/550e8400-e29b-41d4-a716-446655440000"
        assert _normalise_path(path) == "/api/v1/usage/{id}"

    def test_long_hex_collapsed(self) -> None:
        assert _normalise_path("/api/v1/usage/abc123def456") == "/api/v1/usage/{id}"

    def test_numeric_segment_collapsed(self) -> None:
        assert _normalise_path("/api/v1/usage/42") == "/api/v1/usage/{id}"

    def test_static_path_unchanged(self) -> None:
        assert _normalise_path("/api/v1/chat/completions") == "/api/v1/chat/completions"

    def test_short_hex_not_collapsed(self) -> None:
        """Short hex strings (<12 chars) are NOT collapsed."""
        assert _normalise_path("/api/v1/usage/abc123") == "/api/v1/usage/abc123"


# ---------------------------------------------------------------------------
# Skip paths
# ---------------------------------------------------------------------------


class TestSkipPaths:
    """Verify the _SKIP_PATHS frozenset contents."""

    @pytest.mark.parametrize("path", ["/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"])
    def test_skipped(self, path: str) -> None:
        assert path in _SKIP_PATHS

    def test_proxy_path_not_skipped(self) -> None:
        assert "/api/v1/chat/completions" not in _SKIP_PATHS


# ---------------------------------------------------------------------------
# Counters observed through the app
# ---------------------------------------------------------------------------


class TestGatewayCounters:
    """Verify metric increments across a real request."""

    @pytest.mark.asyncio
    async def test_success_increments_counters(self, client, seed) -> None:
        await seed(tokens=10_000)
        labels = {"method": "POST", "path": "/api/v1/chat/completions", "status_code": "200"}
        http_before = _sample("meter_http_requests_total", labels)
        success_before = _sample("meter_metered_requests_total", {"outcome": "success"})
        debited_before = _sample("meter_tokens_debited_total")

        await client.post(
            "/api/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "Hi"}]},
            headers=AUTH_HEADERS,
        )

        assert _sample("meter_http_requests_total", labels) == http_before + 1
        assert _sample("meter_metered_requests_total", {"outcome": "success"}) == success_before + 1
        assert _sample("meter_tokens_debited_total") == debited_before + 812

    @pytest.mark.asyncio
    async def test_rejection_counted_by_outcome(self, client) -> None:
        before = _sample("meter_metered_requests_total", {"outcome": "unauthenticated"})
        await client.post("/api/v1/chat/completions", json={"messages": []})
        assert _sample("meter_metered_requests_total", {"outcome": "unauthenticated"}) == before + 1

    @pytest.mark.asyncio
    async def test_metrics_endpoint_returns_text_format(self, client) -> None:
        resp = await client.get("/metrics")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "# TYPE meter_billing_events counter" in resp.text


# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------


class TestRequestLogging:
    """Verify the access log entry emitted for each request."""

    @pytest.mark.asyncio
    async def test_generates_correlation_id(self, client) -> None:
        resp = await client.get("/api/v1/health")
        assert len(resp.headers["X-Correlation-ID"]) == 36

    @pytest.mark.asyncio
    async def test_credentials_masked_and_user_logged(self, client, seed, caplog) -> None:
        await seed()
        with caplog.at_level(logging.INFO, logger="meter_api.access"):
            await client.post(
                "/api/v1/chat/completions",
                json={"messages": [{"role": "user", "content": "Hi"}]},
                headers=AUTH_HEADERS,
            )

        records = [r for r in caplog.records if r.name == "meter_api.access"]
        assert records
        payload = records[-1].request
        assert payload["headers"]["authorization"] == "***"
        assert payload["user_id"] == "user-1"
        assert payload["status_code"] == 200

    @pytest.mark.asyncio
    async def test_client_errors_logged_as_warning(self, client, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="meter_api.access"):
            await client.post("/api/v1/chat/completions", json={"messages": []})

        records = [r for r in caplog.records if r.name == "meter_api.access"]
        assert records[-1].levelno == logging.WARNING
        assert records[-1].request["user_id"] == "anonymous"
