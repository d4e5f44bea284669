"""HTTP client for the upstream LLM provider (OpenAI-compatible API)."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from meter_core.errors import UpstreamProtocolError, UpstreamTransportError
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class UpstreamResponse(BaseModel):
    """A successfully returned upstream completion.

    ``total_tokens`` is ``None`` when the provider did not report usage.
    """

    body: dict[str, Any]
    total_tokens: int | None = None


def extract_total_tokens(body: dict[str, Any]) -> int | None:
    """Return ``usage.total_tokens`` if present and well-formed.

    Falls back to ``prompt_tokens + completion_tokens`` when only the parts
    are reported.  Booleans, negatives, and non-integers count as absent.
    """
    usage = body.get("usage")
    if not isinstance(usage, dict):
        return None

    def _count(value: Any) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return None
        return value

    total = _count(usage.get("total_tokens"))
    if total is not None:
        return total

    prompt = _count(usage.get("prompt_tokens"))
    completion = _count(usage.get("completion_tokens"))
    if prompt is not None and completion is not None:
        return prompt + completion
    return None


class UpstreamLLMClient:
    """Thin async wrapper around ``POST /chat/completions``.

    Unlike advisory clients that degrade to ``None``, every failure here is
    raised: the caller must know whether usage was incurred before it
    decides to debit.

    Parameters
    ----------
    base_url:
        Root URL of the provider API (e.g. ``https://openrouter.ai/api/v1``).
    api_key:
        Provider API key sent as a bearer token.
    timeout:
        Hard bound on the whole request, in seconds.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 60.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        max_tokens: int,
    ) -> UpstreamResponse:
        """Issue exactly one completion request.

        Raises
        ------
        UpstreamTransportError
            On timeout or connection failure (no response was received).
        UpstreamProtocolError
            On a non-2xx status or a body that is not a JSON object.
        """
        payload = {"messages": messages, "model": model, "max_tokens": max_tokens}
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Upstream request timed out after %.1fs (model=%s)", self._timeout, model)
            raise UpstreamTransportError(f"Upstream timed out after {self._timeout:.0f}s") from exc
        except httpx.RequestError as exc:
            logger.warning("Upstream request failed (model=%s): %s", model, exc)
            raise UpstreamTransportError(f"Upstream request failed: {exc.__class__.__name__}") from exc

        if response.is_error:
            logger.warning(
                "Upstream returned %d (model=%s): %s",
                response.status_code,
                model,
                response.text[:500],
            )
            raise UpstreamProtocolError(
                f"Upstream returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamProtocolError("Upstream returned a non-JSON body", status_code=response.status_code) from exc

        if not isinstance(body, dict):
            raise UpstreamProtocolError("Upstream returned a non-object body", status_code=response.status_code)

        return UpstreamResponse(body=body, total_tokens=extract_total_tokens(body))

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()
