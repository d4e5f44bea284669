"""Balance and usage history for the authenticated caller."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from meter_core.state.repository import AccountRepository, UsageLogRepository

from meter_api.dependencies import CurrentUserDep, SessionDep
from meter_api.schemas import ErrorResponse, UsageLogResponse, UsageSummaryResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageSummaryResponse, responses={404: {"model": ErrorResponse}})
async def get_usage(
    session: SessionDep,
    user: CurrentUserDep,
    limit: int = Query(default=20, ge=1, le=200),
) -> UsageSummaryResponse | JSONResponse:
    """Return the caller's tier, remaining balance, and most recent usage.

    A caller with no profile gets 404, not the proxy's 402.
    """
    account = await AccountRepository(session).get(user.user_id)
    if account is None:
        logger.info("Usage requested for user %s with no profile", user.user_id)
        return JSONResponse(status_code=404, content={"error": "Account not found"})

    rows = await UsageLogRepository(session).list_recent(user.user_id, limit=limit)
    return UsageSummaryResponse(
        user_id=account.user_id,
        tier=account.tier.value,
        tokens_remaining=account.tokens_remaining,
        recent=[
            UsageLogResponse(
                id=row.id,
                operation_type=row.operation_type,
                model=row.model,
                tokens_used=row.tokens_used,
                latency_ms=row.latency_ms,
                status=row.status,
                error_type=row.error_type,
                created_at=row.created_at,
            )
            for row in rows
        ],
    )
