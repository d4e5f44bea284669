"""Metered chat-completion endpoint.

``POST /api/v1/chat/completions`` accepts an OpenAI-style body, forwards
it to the upstream provider, debits the caller's balance by the reported
usage, and returns the upstream body with a ``_metadata`` block.
Failures are mapped to ``{"error": ...}`` bodies by the application's
exception handlers.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from meter_api.dependencies import UsageProxyDep
from meter_api.schemas import ChatCompletionRequest, ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])


@router.post(
    "/chat/completions",
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": ChatCompletionRequest.model_json_schema()}},
        }
    },
)
async def chat_completions(request: Request, proxy: UsageProxyDep) -> JSONResponse:
    """Proxy one chat completion and meter its token usage.

    The body is read raw and validated only after the caller is
    authenticated and has a positive balance.
    """
    body = await request.body()
    result = await proxy.serve(request.headers.get("authorization"), body)
    request.state.user_id = result.user_id
    content: dict[str, Any] = result.to_response()
    return JSONResponse(content=content)
