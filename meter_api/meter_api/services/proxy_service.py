"""Metered chat-completion proxy.

Each request walks a fixed sequence of states::

    AUTHENTICATING -> CHECKING_QUOTA -> CALLING_UPSTREAM -> DEBITING
        -> RECORDING -> RESPONDING

Any failure moves the request to ``ERROR`` and the triggering
:class:`~meter_core.errors.MeterError` propagates to the router, which maps
it to a status code.  Failures before ``DEBITING`` never touch the balance.
Once ``DEBITING`` commits, the request succeeds even if ``RECORDING``
fails: the user is charged for usage the upstream already billed, and the
missing audit row is logged at ERROR for reconciliation.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any

from meter_core.errors import (
    AccountNotFound,
    InsufficientBalance,
    InvalidRequest,
    MeterError,
    StorageError,
    Unauthenticated,
    UpstreamProtocolError,
    UpstreamTransportError,
)
from meter_core.metering.events import UsageEvent, UsageStatus
from pydantic import BaseModel, ValidationError

from meter_api.config import APISettings
from meter_api.middleware.prometheus import (
    METERED_REQUESTS_TOTAL,
    TOKENS_CLAMPED_TOTAL,
    TOKENS_DEBITED_TOTAL,
    UPSTREAM_LATENCY,
)
from meter_api.schemas import ChatCompletionRequest, UsageMetadata
from meter_api.services.auth_service import AuthGate
from meter_api.services.llm_client import UpstreamLLMClient
from meter_api.services.quota_service import QuotaLedger
from meter_api.services.usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)


class ProxyState(str, Enum):
    """Lifecycle states of a metered request."""

    AUTHENTICATING = "authenticating"
    CHECKING_QUOTA = "checking_quota"
    CALLING_UPSTREAM = "calling_upstream"
    DEBITING = "debiting"
    RECORDING = "recording"
    RESPONDING = "responding"
    ERROR = "error"


# Metric label per terminal error class.
_OUTCOME_LABELS: dict[type[MeterError], str] = {
    Unauthenticated: "unauthenticated",
    AccountNotFound: "account_not_found",
    InvalidRequest: "invalid_request",
    InsufficientBalance: "insufficient_balance",
    UpstreamTransportError: "upstream_transport_error",
    UpstreamProtocolError: "upstream_protocol_error",
    StorageError: "storage_error",
}


def _outcome_label(exc: MeterError) -> str:
    for error_type, label in _OUTCOME_LABELS.items():
        if isinstance(exc, error_type):
            return label
    return type(exc).__name__.lower()


class ProxyResult(BaseModel):
    """A completed metered request."""

    user_id: str
    body: dict[str, Any]
    tokens_used: int
    tokens_remaining: int
    latency_ms: int

    def to_response(self) -> dict[str, Any]:
        """Return the upstream body with the ``_metadata`` block attached."""
        metadata = UsageMetadata(tokens_used=self.tokens_used, tokens_remaining=self.tokens_remaining)
        return {**self.body, "_metadata": metadata.model_dump()}


class UsageProxy:
    """Authenticate, gate, forward, debit, and record one completion call.

    Parameters
    ----------
    auth_gate:
        Resolves the bearer credential to a user id.
    ledger:
        Balance check and atomic debit.
    upstream:
        Client for the upstream LLM provider.
    recorder:
        Audit log writer.
    settings:
        Supplies the default model, default ``max_tokens`` and the usage
        fallback charged when the upstream reports no usage.
    """

    def __init__(
        self,
        auth_gate: AuthGate,
        ledger: QuotaLedger,
        upstream: UpstreamLLMClient,
        recorder: UsageRecorder,
        settings: APISettings,
    ) -> None:
        self._auth_gate = auth_gate
        self._ledger = ledger
        self._upstream = upstream
        self._recorder = recorder
        self._default_model = settings.default_model
        self._default_max_tokens = settings.default_max_tokens
        self._fallback_usage = settings.fallback_usage_tokens

    async def serve(self, authorization: str | None, body: bytes | str) -> ProxyResult:
        """Run one request through the full state sequence.

        Parameters
        ----------
        authorization:
            Raw ``Authorization`` header value (may be ``None``).
        body:
            Raw JSON request body.  Parsed only after the caller has been
            authenticated and has a positive balance.

        Raises
        ------
        MeterError
            The subclass identifies the failure; see
            :mod:`meter_core.errors`.
        """
        state = ProxyState.AUTHENTICATING
        user_id: str | None = None
        try:
            identity = await self._auth_gate.resolve_header(authorization)
            user_id = identity.user_id

            state = ProxyState.CHECKING_QUOTA
            await self._ledger.check_balance(user_id)
            request = self._parse(body)
            model = request.model or self._default_model
            max_tokens = request.max_tokens or self._default_max_tokens

            state = ProxyState.CALLING_UPSTREAM
            messages = [m.model_dump(exclude_none=True) for m in request.messages]
            start = time.monotonic()
            try:
                upstream = await self._upstream.complete(messages, model, max_tokens)
            except (UpstreamTransportError, UpstreamProtocolError) as exc:
                latency_ms = _elapsed_ms(start)
                await self._record_failure(user_id, model, latency_ms, _outcome_label(exc))
                raise
            latency_ms = _elapsed_ms(start)
            UPSTREAM_LATENCY.observe(latency_ms / 1000)

            state = ProxyState.DEBITING
            if upstream.total_tokens is None:
                logger.info(
                    "Upstream reported no usage for user %s (model=%s); charging fallback of %d tokens",
                    user_id,
                    model,
                    self._fallback_usage,
                )
                tokens_used = self._fallback_usage
            else:
                tokens_used = upstream.total_tokens
            try:
                debit = await self._ledger.debit(user_id, tokens_used)
            except (InsufficientBalance, AccountNotFound, StorageError) as exc:
                await self._record_failure(user_id, model, latency_ms, _outcome_label(exc))
                raise
            TOKENS_DEBITED_TOTAL.inc(debit.debited)
            if debit.clamped:
                TOKENS_CLAMPED_TOTAL.inc(debit.requested - debit.debited)

            state = ProxyState.RECORDING
            event = UsageEvent(
                user_id=user_id,
                model=model,
                tokens_used=tokens_used,
                latency_ms=latency_ms,
                status=UsageStatus.COMPLETED,
            )
            try:
                await self._recorder.append(event)
            except StorageError as exc:
                logger.error(
                    "Usage event %s not recorded after debit (user=%s, tokens=%d): %s",
                    event.event_id,
                    user_id,
                    tokens_used,
                    exc,
                )

            state = ProxyState.RESPONDING
            result = ProxyResult(
                user_id=user_id,
                body=upstream.body,
                tokens_used=tokens_used,
                tokens_remaining=debit.balance,
                latency_ms=latency_ms,
            )
        except MeterError as exc:
            logger.info(
                "Metered request %s -> %s (user=%s): %s",
                state.value,
                ProxyState.ERROR.value,
                user_id or "-",
                exc,
            )
            METERED_REQUESTS_TOTAL.labels(outcome=_outcome_label(exc)).inc()
            raise

        METERED_REQUESTS_TOTAL.labels(outcome="success").inc()
        logger.info(
            "Metered request completed (user=%s, tokens=%d, remaining=%d, latency=%dms)",
            user_id,
            result.tokens_used,
            result.tokens_remaining,
            result.latency_ms,
        )
        return result

    @staticmethod
    def _parse(body: bytes | str) -> ChatCompletionRequest:
        try:
            return ChatCompletionRequest.model_validate_json(body)
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            message = first.get("msg", "invalid request body")
            raise InvalidRequest(f"{location}: {message}" if location else message) from exc

    async def _record_failure(self, user_id: str, model: str, latency_ms: int, error_type: str) -> None:
        """Append a zero-token ``failed`` event, logging rather than raising."""
        event = UsageEvent(
            user_id=user_id,
            model=model,
            tokens_used=0,
            latency_ms=latency_ms,
            status=UsageStatus.FAILED,
            error_type=error_type,
        )
        try:
            await self._recorder.append(event)
        except StorageError as exc:
            logger.error("Failed usage event %s not recorded (user=%s): %s", event.event_id, user_id, exc)


def _elapsed_ms(start: float) -> int:
    return max(0, int((time.monotonic() - start) * 1000))
