"""
Webhook Ingestion - Verify, normalize and apply store notifications.

NO DICTIONARIES - All data uses strongly typed models.

Flow per delivery:
1. Authenticate and decode the store envelope (normalizer)
2. Fetch the authoritative store record where the notification is thin
3. Apply through the transaction processor
4. Map the outcome onto the acknowledgement the store expects

Referential mismatches are queued for the reconciliation worker and
acknowledged, so the store stops redelivering a notification we can only
resolve later. Invalid transitions are logged and acknowledged as ignored.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subledger.db.models import utc_now
from subledger.exceptions import (
    DuplicateNotificationError,
    InvalidTransitionError,
    MalformedPayloadError,
    ReferentialMismatchError,
    StoreNotConfiguredError,
    StoreRejectedError,
    SubscriptionLedgerError,
    SubscriptionNotFoundError,
)
from subledger.models.api import EventKind, Store
from subledger.models.domain import (
    LifecycleApplication,
    NormalizedEvent,
    StoreState,
    StoreSubscriptionState,
)
from subledger.models.google_play import GooglePlayNotification
from subledger.models.stripe import StripeWebhookEvent
from subledger.observability.logging import log_context
from subledger.observability.metrics import metrics
from subledger.services.billing_client import StoreClients
from subledger.services.google_play_provider import GooglePlayBillingClient
from subledger.services.normalizer import Normalizers, StripeEventAdapter
from subledger.services.stripe_provider import StripeBillingClient
from subledger.services.transaction_processor import SubscriptionTransactionProcessor

logger = get_logger(__name__)

AckStatus = Literal["success", "duplicate", "ignored", "queued"]

# Google answers these for tokens it no longer keeps
GONE_STATUS_CODES = frozenset({404, 410})


@dataclass(frozen=True)
class WebhookOutcome:
    """How one delivery was handled."""

    status: AckStatus
    event_id: str | None = None
    subscription_id: UUID | None = None

    @property
    def http_status(self) -> int:
        return 202 if self.status == "queued" else 200


class WebhookService:
    """
    Handles verified store deliveries for one request.

    Construct per request with the write session; the store clients and
    normalizers are the process-wide instances built at startup.
    """

    def __init__(
        self,
        session: AsyncSession,
        clients: StoreClients,
        normalizers: Normalizers,
        clock: Callable[[], datetime] = utc_now,
        default_grace_days: int = 16,
    ) -> None:
        self.session = session
        self.clients = clients
        self.normalizers = normalizers
        self._clock = clock
        self.processor = SubscriptionTransactionProcessor(
            session, clock=clock, default_grace_days=default_grace_days
        )

    # ========================================================================
    # Google Play
    # ========================================================================

    async def handle_google_play(
        self, payload: bytes, authorization: str | None
    ) -> WebhookOutcome:
        """
        Handle a Pub/Sub push of a Real-Time Developer Notification.

        Raises:
            StoreNotConfiguredError: Google Play not configured
            InvalidSignatureError: Push token rejected
            MalformedPayloadError: Undecodable or foreign notification
            StoreUnavailableError: Google API kept failing
            TransactionAbortedError: Apply rolled back, store should retry
        """
        normalizer = self.normalizers.google_play
        if normalizer is None:
            raise StoreNotConfiguredError(Store.MOBILE)

        # Fetches Google's signing certificates
        await asyncio.to_thread(normalizer.verify_push_authorization, authorization)
        notification = normalizer.decode(payload)

        with log_context(store=Store.MOBILE.value, notification_id=notification.message_id):
            kind = normalizer.kind_for(notification.notification_type)
            if notification.is_test or kind is None:
                logger.info(
                    "google_play_notification_ignored",
                    notification_type=notification.notification_type,
                    is_test=notification.is_test,
                )
                return self._ack(Store.MOBILE, "ignored", notification.message_id)

            state = await self._google_purchase_state(notification, kind)
            event = normalizer.normalize(notification, state)
            if event is None:
                return self._ack(Store.MOBILE, "ignored", notification.message_id)

            outcome = await self._apply_event(event)

            if (
                outcome.status == "success"
                and state.needs_acknowledgement
                and isinstance(self.clients.google_play, GooglePlayBillingClient)
                and notification.subscription_id
            ):
                await self._acknowledge(
                    self.clients.google_play, notification.subscription_id, event.correlation_key
                )
            return outcome

    async def _google_purchase_state(
        self,
        notification: GooglePlayNotification,
        kind: EventKind,
    ) -> StoreSubscriptionState:
        if not notification.purchase_token or not notification.subscription_id:
            raise MalformedPayloadError(Store.MOBILE, "purchaseToken and subscriptionId required")

        try:
            return await self.clients.for_store(Store.MOBILE).validate_subscription(
                notification.subscription_id, notification.purchase_token, self._clock()
            )
        except StoreRejectedError as exc:
            if exc.status_code not in GONE_STATUS_CODES or kind == EventKind.PURCHASED:
                raise
            # The token is gone: the notification itself is all we have
            logger.warning(
                "google_play_purchase_gone",
                status_code=exc.status_code,
                notification_type=notification.notification_type,
            )
            return StoreSubscriptionState(
                store=Store.MOBILE,
                correlation_key=notification.purchase_token,
                state=StoreState.EXPIRED,
                expires_at=notification.event_time,
                checked_at=self._clock(),
                auto_renewing=False,
                store_product_id=notification.subscription_id,
            )

    async def _acknowledge(
        self, client: GooglePlayBillingClient, subscription_id: str, purchase_token: str
    ) -> None:
        try:
            await client.acknowledge(subscription_id, purchase_token)
        except SubscriptionLedgerError as exc:
            # Google refunds after 3 days without ack; the next delivery retries
            logger.warning("google_play_acknowledge_failed", error=str(exc))

    # ========================================================================
    # App Store
    # ========================================================================

    async def handle_app_store(self, signed_payload: str) -> WebhookOutcome:
        """
        Handle an App Store Server Notification V2.

        Raises:
            StoreNotConfiguredError: App Store not configured
            InvalidSignatureError: JWS or certificate chain rejected
            MalformedPayloadError: Missing or inconsistent fields
            TransactionAbortedError: Apply rolled back, store should retry
        """
        normalizer = self.normalizers.app_store
        if normalizer is None:
            raise StoreNotConfiguredError(Store.APPSTORE)

        notification = normalizer.decode(signed_payload)
        with log_context(
            store=Store.APPSTORE.value, notification_id=notification.notification_uuid
        ):
            event = normalizer.normalize(notification)
            if event is None:
                return self._ack(Store.APPSTORE, "ignored", notification.notification_uuid)
            return await self._apply_event(event)

    # ========================================================================
    # Stripe
    # ========================================================================

    async def handle_stripe(self, payload: bytes, signature: str) -> WebhookOutcome:
        """
        Handle a Stripe webhook (payment succeeded, charge refunded).

        Raises:
            StoreNotConfiguredError: Stripe not configured
            InvalidSignatureError: Stripe-Signature rejected
            MalformedPayloadError: Missing metadata
            TransactionAbortedError: Apply rolled back, Stripe should retry
        """
        client = self.clients.web
        adapter = self.normalizers.stripe
        if not isinstance(client, StripeBillingClient) or adapter is None:
            raise StoreNotConfiguredError(Store.WEB)

        event = client.parse_webhook(payload, signature)
        if event is None:
            return self._ack(Store.WEB, "ignored")

        with log_context(store=Store.WEB.value, notification_id=event.event_id):
            if event.is_payment_succeeded():
                return await self._stripe_payment(adapter, event)
            return await self._stripe_refund(adapter, event)

    async def _stripe_payment(
        self, adapter: StripeEventAdapter, event: StripeWebhookEvent
    ) -> WebhookOutcome:
        user_id = adapter.user_id_of(event)
        if not event.product_id:
            raise MalformedPayloadError(Store.WEB, "Missing product_id metadata")

        async def apply() -> WebhookOutcome:
            product = await self.processor.catalog.resolve_store_product(
                Store.WEB, event.product_id or ""
            )
            application = await self.processor.apply_payment_event(
                adapter.payment_event(event, user_id, product)
            )
            status: AckStatus = "duplicate" if application.already_applied else "success"
            return self._ack(
                Store.WEB, status, event.event_id, application.subscription.subscription_id
            )

        return await self._guarded(
            Store.WEB,
            apply,
            event_id=event.event_id,
            correlation_key=event.correlation_key or event.object_id,
            kind=EventKind.PURCHASED,
            store_product_id=event.product_id,
            raw=event.raw,
        )

    async def _stripe_refund(
        self, adapter: StripeEventAdapter, event: StripeWebhookEvent
    ) -> WebhookOutcome:
        correlation_key = await self._web_correlation_key(event)
        if correlation_key is None:
            return await self._queue(
                Store.WEB,
                SubscriptionNotFoundError(event.payment_intent_id or event.object_id, Store.WEB),
                event_id=event.event_id,
                correlation_key=event.payment_intent_id or event.object_id,
                kind=EventKind.REVOKED,
                raw=event.raw,
            )

        revoked = adapter.refund_event(event, correlation_key)
        if revoked is None:
            return self._ack(Store.WEB, "ignored", event.event_id)
        return await self._apply_event(revoked)

    async def _web_correlation_key(self, event: StripeWebhookEvent) -> str | None:
        """The refunded charge's subscription key, from its payment record."""
        if event.payment_intent_id:
            subscription = await self.processor.subscription_for_transaction(
                Store.WEB, event.payment_intent_id
            )
            if subscription is not None:
                return subscription.correlation_key
        return event.correlation_key

    # ========================================================================
    # Shared apply and outcome mapping
    # ========================================================================

    async def _apply_event(self, event: NormalizedEvent) -> WebhookOutcome:
        async def apply() -> WebhookOutcome:
            application = await self.processor.apply_store_event(event)
            return self._lifecycle_outcome(event, application)

        return await self._guarded(
            event.store,
            apply,
            event_id=event.notification_id,
            correlation_key=event.correlation_key,
            kind=event.kind,
            store_product_id=event.store_product_id,
            raw=event.raw_fields,
            event=event,
        )

    def _lifecycle_outcome(
        self, event: NormalizedEvent, application: LifecycleApplication
    ) -> WebhookOutcome:
        logger.info(
            "webhook_event_processed",
            event_kind=event.kind.value,
            applied=application.applied,
            subscription_id=str(application.subscription.subscription_id),
            status=application.subscription.status.value,
        )
        return self._ack(
            event.store,
            "success",
            event.notification_id,
            application.subscription.subscription_id,
        )

    async def _guarded(
        self,
        store: Store,
        apply: Callable[[], Awaitable[WebhookOutcome]],
        *,
        event_id: str | None,
        correlation_key: str,
        kind: EventKind,
        store_product_id: str | None = None,
        raw: dict[str, object] | None = None,
        event: NormalizedEvent | None = None,
    ) -> WebhookOutcome:
        try:
            outcome = await apply()
        except DuplicateNotificationError:
            logger.info("webhook_duplicate_notification")
            return self._ack(store, "duplicate", event_id)
        except ReferentialMismatchError as exc:
            return await self._queue(
                store,
                exc,
                event_id=event_id,
                correlation_key=correlation_key,
                kind=kind,
                store_product_id=store_product_id,
                raw=raw,
            )
        except InvalidTransitionError as exc:
            logger.warning(
                "webhook_invalid_transition",
                current_status=exc.current.value,
                event_kind=exc.kind.value,
            )
            if event is not None:
                await self.processor.record_processing_error(error=str(exc), event=event)
            return self._ack(store, "ignored", event_id)

        return outcome

    async def _queue(
        self,
        store: Store,
        error: ReferentialMismatchError,
        *,
        event_id: str | None,
        correlation_key: str,
        kind: EventKind,
        store_product_id: str | None = None,
        raw: dict[str, object] | None = None,
    ) -> WebhookOutcome:
        logger.warning(
            "webhook_referential_mismatch",
            error=str(error),
            error_type=type(error).__name__,
        )
        await self.processor.enqueue_unresolved(
            store=store,
            correlation_key=correlation_key,
            event_kind=kind,
            error=error,
            store_product_id=store_product_id,
            notification_id=event_id,
            raw=raw,
        )
        return self._ack(store, "queued", event_id)

    @staticmethod
    def _ack(
        store: Store,
        status: AckStatus,
        event_id: str | None = None,
        subscription_id: UUID | None = None,
    ) -> WebhookOutcome:
        metrics.record_webhook(store.value, status)
        return WebhookOutcome(status=status, event_id=event_id, subscription_id=subscription_id)
