"""Stripe webhook verification and subscription reconciliation.

Reconciliation applies *absolute* assignments (tier and balance are set,
never incremented), so redelivering an event leaves the account in the
same state and no event-id deduplication is required.  A transition that
ever becomes a delta (e.g. a top-up) needs a persisted event-id ledger.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import stripe
from meter_core.billing.events import (
    BillingEvent,
    CheckoutIgnored,
    SubscriptionActivated,
    SubscriptionCancelled,
    UnrecognizedEvent,
)
from meter_core.errors import SignatureInvalid, StorageError
from meter_core.models.account import Tier
from meter_core.state.repository import AccountRepository
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meter_api.config import APISettings

logger = logging.getLogger(__name__)

# Reconciliation outcomes (also used as metric labels).
PROCESSED = "processed"
IGNORED = "ignored"
UNRESOLVED = "unresolved"


def verify_webhook(payload: bytes, signature: str | None, secret: str) -> dict[str, Any]:
    """Verify a Stripe webhook signature and return the decoded event.

    Parameters
    ----------
    payload:
        The raw request body, exactly as received.
    signature:
        Value of the ``Stripe-Signature`` header.
    secret:
        The endpoint's webhook signing secret.

    Raises
    ------
    SignatureInvalid
        The header is missing, the signature does not match, or the body is
        not valid JSON.  The message is safe to return to the sender.
    """
    if not signature:
        raise SignatureInvalid("No signature")

    try:
        stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=secret)
    except ValueError as exc:
        logger.warning("Stripe webhook payload could not be parsed: %s", exc)
        raise SignatureInvalid(f"Webhook Error: {exc}") from exc
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise SignatureInvalid(f"Webhook Error: {exc}") from exc

    event = json.loads(payload)
    if not isinstance(event, dict):
        raise SignatureInvalid("Webhook Error: event payload is not an object")
    return event


class BillingReconciler:
    """Translate verified billing events into account state changes.

    Parameters
    ----------
    session_factory:
        Factory for sessions bound to the account store.  Each event is
        applied in its own transaction.
    settings:
        Supplies the pro and free token allowances.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: APISettings,
    ) -> None:
        self._session_factory = session_factory
        self._pro_allowance = settings.pro_allowance
        self._free_allowance = settings.free_allowance

    async def apply(self, event: BillingEvent) -> str:
        """Apply *event* and return ``processed``, ``ignored`` or ``unresolved``.

        Events whose account cannot be found are logged and reported as
        ``unresolved`` rather than raised: the provider would redeliver them
        forever and a retry cannot create the missing account.

        Raises
        ------
        StorageError
            The account store failed; the caller should answer with a 5xx so
            the provider redelivers.
        """
        if isinstance(event, (CheckoutIgnored, UnrecognizedEvent)):
            logger.debug("Ignoring billing event %s (%s)", event.event_id, event.event_type)
            return IGNORED

        try:
            if isinstance(event, SubscriptionActivated):
                return await self._activate(event)
            if isinstance(event, SubscriptionCancelled):
                return await self._cancel(event)
        except SQLAlchemyError as exc:
            logger.error("Billing event %s could not be applied: %s", event.event_id, exc)
            raise StorageError("Account store unavailable") from exc

        raise TypeError(f"Unhandled billing event variant: {type(event).__name__}")

    async def _activate(self, event: SubscriptionActivated) -> str:
        if not event.customer_email:
            logger.warning(
                "Checkout %s completed without a customer email; cannot resolve account",
                event.event_id,
            )
            return UNRESOLVED

        async with self._session_factory() as session:
            repo = AccountRepository(session)
            account = await repo.find_by_email(event.customer_email)
            if account is None:
                logger.warning(
                    "Checkout %s completed for unknown email %s; skipping activation",
                    event.event_id,
                    event.customer_email,
                )
                return UNRESOLVED

            updated = await repo.update(
                account.user_id,
                tier=Tier.PRO,
                tokens_remaining=self._pro_allowance,
                billing_customer_id=event.customer_id,
                billing_subscription_id=event.subscription_id,
            )
            if not updated:
                logger.warning("Account %s vanished before activation %s", account.user_id, event.event_id)
                return UNRESOLVED
            await session.commit()

        logger.info(
            "Activated pro subscription %s for user %s (balance=%d)",
            event.subscription_id,
            account.user_id,
            self._pro_allowance,
        )
        return PROCESSED

    async def _cancel(self, event: SubscriptionCancelled) -> str:
        if not event.subscription_id:
            logger.warning("Subscription deletion %s carried no subscription id", event.event_id)
            return UNRESOLVED

        async with self._session_factory() as session:
            repo = AccountRepository(session)
            account = await repo.find_by_subscription_id(event.subscription_id)
            if account is None:
                logger.warning(
                    "Subscription %s deleted but no account holds it; skipping downgrade",
                    event.subscription_id,
                )
                return UNRESOLVED

            updated = await repo.update(
                account.user_id,
                tier=Tier.FREE,
                tokens_remaining=self._free_allowance,
                billing_subscription_id=None,
            )
            if not updated:
                logger.warning("Account %s vanished before cancellation %s", account.user_id, event.event_id)
                return UNRESOLVED
            await session.commit()

        logger.info(
            "Cancelled subscription %s for user %s (balance=%d)",
            event.subscription_id,
            account.user_id,
            self._free_allowance,
        )
        return PROCESSED
