"""
Stripe Billing Client Implementation (web store).

NO DICTIONARIES - All data uses strongly typed models.

First-party web payments arrive as Stripe webhooks. Web subscriptions are
keyed by the checkout's `subscription_ref` metadata (or a Stripe Billing
`sub_` id); their renewal is date-driven, so validation only exists for
Stripe Billing subscriptions.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import stripe
from structlog import get_logger

from subledger.exceptions import (
    InvalidSignatureError,
    MalformedPayloadError,
    StoreRejectedError,
    StoreTransientError,
    UnsupportedStoreOperationError,
)
from subledger.models.api import Store
from subledger.models.domain import StoreState, StoreSubscriptionState
from subledger.models.stripe import StripeWebhookEvent
from subledger.services.retry import RetryPolicy, call_with_retries

logger = get_logger(__name__)

T = TypeVar("T")

HANDLED_EVENT_TYPES = frozenset({"payment_intent.succeeded", "charge.refunded"})

_STRIPE_STATES = {
    "active": StoreState.ACTIVE,
    "trialing": StoreState.ACTIVE,
    "past_due": StoreState.GRACE,
    "unpaid": StoreState.ON_HOLD,
    "paused": StoreState.PAUSED,
    "canceled": StoreState.EXPIRED,
    "incomplete_expired": StoreState.EXPIRED,
}


def _timestamp(value: object) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)  # type: ignore[call-overload]


class StripeBillingClient:
    """
    Stripe billing client for web payments.

    Verifies webhooks, cancels Stripe Billing subscriptions and refunds charges.
    """

    store = Store.WEB

    def __init__(self, api_key: str, webhook_secret: str, policy: RetryPolicy) -> None:
        """
        Initialize Stripe client.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            policy: Timeout and retry policy for every call
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.policy = policy
        stripe.api_key = api_key

    def parse_webhook(self, payload: bytes, signature: str) -> StripeWebhookEvent | None:
        """
        Verify and parse a Stripe webhook.

        Returns:
            The event, or None for event types this service does not handle

        Raises:
            InvalidSignatureError: Signature verification failed
            MalformedPayloadError: Payload is not a valid Stripe event
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise InvalidSignatureError(Store.WEB, "Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            raise MalformedPayloadError(Store.WEB, f"Invalid Stripe payload: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        if event.type not in HANDLED_EVENT_TYPES:
            return None

        obj = event.data.object
        metadata = obj.get("metadata") or {}
        currency = obj.get("currency")
        if not currency:
            raise MalformedPayloadError(Store.WEB, f"{event.type} without currency")

        refund_id = None
        refunds = obj.get("refunds")
        if refunds and refunds.get("data"):
            refund_id = refunds["data"][0].get("id")

        try:
            return StripeWebhookEvent(
                event_id=event.id,
                event_type=event.type,
                created=_timestamp(event.created) or datetime.now(UTC),
                object_id=obj.id,
                amount_minor=int(obj.get("amount_received") or obj.get("amount") or 0),
                currency=currency.upper(),
                payment_intent_id=obj.id if event.type == "payment_intent.succeeded" else obj.get("payment_intent"),
                amount_refunded_minor=int(obj.get("amount_refunded") or 0),
                refund_id=refund_id,
                fully_refunded=bool(obj.get("refunded", False)),
                stripe_subscription_id=metadata.get("stripe_subscription_id"),
                user_id=metadata.get("user_id"),
                product_id=metadata.get("product_id"),
                subscription_ref=metadata.get("subscription_ref"),
                raw=event.to_dict() if hasattr(event, "to_dict") else {},
            )
        except ValueError as exc:
            raise MalformedPayloadError(Store.WEB, str(exc)) from exc

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run one blocking Stripe SDK call under the call policy."""

        async def attempt() -> T:
            try:
                return await asyncio.to_thread(func)
            except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
                raise StoreTransientError(Store.WEB, operation, str(exc)) from exc
            except stripe.StripeError as exc:
                status = exc.http_status or 400
                if status >= 500:
                    raise StoreTransientError(Store.WEB, operation, str(exc)) from exc
                logger.error("stripe_api_rejected", operation=operation, error=str(exc))
                raise StoreRejectedError(Store.WEB, operation, status, str(exc)) from exc

        return await call_with_retries(attempt, store=Store.WEB, name=operation, policy=self.policy)

    async def validate_subscription(
        self, product_ref: str | None, correlation_key: str, now: datetime
    ) -> StoreSubscriptionState:
        """Status of a Stripe Billing subscription (sub_ keys only)."""
        if not correlation_key.startswith("sub_"):
            raise UnsupportedStoreOperationError(Store.WEB, "validate_subscription")

        sub: Any = await self._call(
            "subscriptions.retrieve", lambda: stripe.Subscription.retrieve(correlation_key)
        )
        period_end = sub.get("current_period_end")
        if period_end is None and sub.get("items") and sub["items"].get("data"):
            period_end = sub["items"]["data"][0].get("current_period_end")
        expires_at = _timestamp(period_end) or now

        state = _STRIPE_STATES.get(sub.get("status", ""), StoreState.EXPIRED)
        if state == StoreState.ACTIVE and sub.get("cancel_at_period_end"):
            state = StoreState.CANCELED_PENDING

        return StoreSubscriptionState(
            store=Store.WEB,
            correlation_key=correlation_key,
            state=state,
            expires_at=expires_at,
            checked_at=now,
            auto_renewing=not sub.get("cancel_at_period_end", False),
            store_product_id=product_ref,
            is_trial=sub.get("status") == "trialing",
            start_time=_timestamp(sub.get("start_date")),
        )

    async def cancel(self, product_ref: str | None, correlation_key: str) -> None:
        """Stop renewal of a Stripe Billing subscription; one-off web payments never renew."""
        if not correlation_key.startswith("sub_"):
            logger.info("stripe_cancel_noop", correlation_key=correlation_key[:32])
            return

        await self._call(
            "subscriptions.modify",
            lambda: stripe.Subscription.modify(correlation_key, cancel_at_period_end=True),
        )
        logger.info("stripe_subscription_canceled", subscription_id=correlation_key)

    async def restore(self, product_ref: str | None, correlation_key: str) -> None:
        """Undo a pending cancellation of a Stripe Billing subscription."""
        if not correlation_key.startswith("sub_"):
            return

        await self._call(
            "subscriptions.modify",
            lambda: stripe.Subscription.modify(correlation_key, cancel_at_period_end=False),
        )
        logger.info("stripe_subscription_restored", subscription_id=correlation_key)

    async def refund(
        self, product_ref: str | None, correlation_key: str, transaction_id: str | None
    ) -> None:
        """Refund the payment intent of the given transaction."""
        if not transaction_id or not transaction_id.startswith("pi_"):
            raise StoreRejectedError(Store.WEB, "refunds.create", 400, "payment intent id required")

        refund: Any = await self._call(
            "refunds.create", lambda: stripe.Refund.create(payment_intent=transaction_id)
        )
        logger.info(
            "stripe_refund_created",
            refund_id=refund.id,
            status=refund.status,
            payment_intent_id=transaction_id,
        )
