"""Tagged variants for verified payment-provider events.

Stripe delivers loosely-typed JSON; :func:`parse_billing_event` maps each
payload onto exactly one of the variants below at the boundary so the
reconciler can dispatch exhaustively.  Anything the gateway does not act
on becomes :class:`UnrecognizedEvent` rather than an error.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class _BillingEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str | None = None
    event_type: str


class SubscriptionActivated(_BillingEventBase):
    """Checkout completed in subscription mode; upgrade the buyer to pro."""

    kind: Literal["subscription_activated"] = "subscription_activated"
    customer_email: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None


class CheckoutIgnored(_BillingEventBase):
    """Checkout completed in a non-subscription mode (one-off payment)."""

    kind: Literal["checkout_ignored"] = "checkout_ignored"
    mode: str | None = None


class SubscriptionCancelled(_BillingEventBase):
    """Subscription deleted; downgrade the holder to free."""

    kind: Literal["subscription_cancelled"] = "subscription_cancelled"
    subscription_id: str | None = None


class UnrecognizedEvent(_BillingEventBase):
    """Any event type the gateway does not act on."""

    kind: Literal["unrecognized"] = "unrecognized"


BillingEvent = SubscriptionActivated | CheckoutIgnored | SubscriptionCancelled | UnrecognizedEvent


def _as_id(value: Any) -> str | None:
    """Return a Stripe object id whether the field is expanded or not."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _as_text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def parse_billing_event(event: dict[str, Any]) -> BillingEvent:
    """Map a verified Stripe event payload to a tagged variant.

    Parameters
    ----------
    event:
        The event dict returned by ``stripe.Webhook.construct_event``
        (or any mapping with the same shape).
    """
    event_type = str(event.get("type") or "")
    event_id = _as_id(event.get("id"))
    data = event.get("data")
    data_object = data.get("object") if isinstance(data, dict) else None
    if not isinstance(data_object, dict):
        data_object = {}

    if event_type == CHECKOUT_COMPLETED:
        mode = _as_text(data_object.get("mode"))
        if mode != "subscription":
            return CheckoutIgnored(event_id=event_id, event_type=event_type, mode=mode)
        # customer_email is only set when checkout collected it directly;
        # otherwise it lives under customer_details.
        email = data_object.get("customer_email")
        if not email:
            details = data_object.get("customer_details") or {}
            email = details.get("email") if isinstance(details, dict) else None
        email = _as_text(email)
        return SubscriptionActivated(
            event_id=event_id,
            event_type=event_type,
            customer_email=email,
            customer_id=_as_id(data_object.get("customer")),
            subscription_id=_as_id(data_object.get("subscription")),
        )

    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionCancelled(
            event_id=event_id,
            event_type=event_type,
            subscription_id=_as_id(data_object.get("id")),
        )

    logger.debug("Unrecognized billing event type: %s", event_type)
    return UnrecognizedEvent(event_id=event_id, event_type=event_type)
