"""Payment-provider event variants consumed by billing reconciliation."""

from meter_core.billing.events import (
    BillingEvent,
    CheckoutIgnored,
    SubscriptionActivated,
    SubscriptionCancelled,
    UnrecognizedEvent,
    parse_billing_event,
)

__all__ = [
    "BillingEvent",
    "CheckoutIgnored",
    "SubscriptionActivated",
    "SubscriptionCancelled",
    "UnrecognizedEvent",
    "parse_billing_event",
]
