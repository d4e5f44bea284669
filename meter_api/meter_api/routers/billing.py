"""Billing webhook endpoint.

``POST /api/v1/billing/webhooks`` is authenticated by the Stripe
signature header, not by a bearer token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from meter_core.billing.events import parse_billing_event
from meter_core.errors import SignatureInvalid

from meter_api.dependencies import BillingReconcilerDep, SettingsDep
from meter_api.middleware.prometheus import BILLING_EVENTS_TOTAL
from meter_api.schemas import WebhookAck
from meter_api.services.billing_service import verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhooks", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    reconciler: BillingReconcilerDep,
) -> WebhookAck | PlainTextResponse:
    """Verify, parse, and apply one Stripe webhook event.

    Returns 400 with a plain-text reason when the signature is missing or
    invalid.  Every verified event is acknowledged with
    ``{"received": true}``, including event types the gateway ignores and
    events whose account cannot be found.
    """
    body = await request.body()
    try:
        payload = verify_webhook(
            body,
            request.headers.get("stripe-signature"),
            settings.stripe_webhook_secret.get_secret_value(),
        )
    except SignatureInvalid as exc:
        BILLING_EVENTS_TOTAL.labels(event_type="unverified", result="rejected").inc()
        return PlainTextResponse(str(exc), status_code=400)

    event = parse_billing_event(payload)
    result = await reconciler.apply(event)
    BILLING_EVENTS_TOTAL.labels(event_type=event.kind, result=result).inc()
    logger.info("Billing event %s (%s): %s", event.event_id, event.event_type, result)
    return WebhookAck(received=True)
