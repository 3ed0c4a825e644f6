"""
Atomic Transaction Processor - The only writer of subscription state.

NO DICTIONARIES - All data uses strongly typed models.

Each public operation is one indivisible unit:
1. Deduplicate by store notification id
2. Lock the user row, then the subscription row (SELECT FOR UPDATE)
3. Decide the new ledger state with the transition table
4. Insert at most one PaymentRecord keyed by (store, store_transaction_id)
5. Recompute the user's entitlement projection
6. Append the audit event
7. Flush, verify, commit

Any failure rolls back the whole unit. Unexpected failures surface as
TransactionAbortedError, which is always safe to retry.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subledger.config import settings
from subledger.db.models import (
    PaymentRecord,
    Subscription,
    UnresolvedNotification,
    User,
    utc_now,
)
from subledger.exceptions import (
    ConstraintViolationError,
    CorrelationConflictError,
    DuplicateNotificationError,
    MalformedPayloadError,
    ReferentialMismatchError,
    SubscriptionLedgerError,
    SubscriptionNotFoundError,
    TransactionAbortedError,
    UserNotFoundError,
    WriteVerificationError,
)
from subledger.models.api import (
    EventKind,
    EventSource,
    PaymentStatus,
    Store,
    SubscriptionStatus,
    TransactionType,
    UnresolvedStatus,
)
from subledger.models.domain import (
    LifecycleApplication,
    NormalizedEvent,
    PaymentApplication,
    PaymentEvent,
    ProductData,
    SubscriptionData,
)
from subledger.observability.metrics import metrics
from subledger.observability.tracing import trace_operation
from subledger.services.entitlements import EntitlementWriter
from subledger.services.event_log import EventLog
from subledger.services.ledger import (
    ENTITLED_STATUSES,
    TERMINAL_STATUSES,
    LedgerState,
    apply_event,
    expiry_event,
    initial_state,
    is_due_for_expiry,
)
from subledger.services.product_catalog import (
    DatabaseProductCatalog,
    ProductCatalog,
    add_billing_period,
)
from subledger.services.records import (
    apply_ledger_state,
    ledger_state_of,
    payment_to_domain,
    subscription_to_domain,
)

logger = get_logger(__name__)

T = TypeVar("T")

PAYMENT_CONSTRAINT = "uq_payment_records_store_transaction"
NOTIFICATION_CONSTRAINT = "uq_subscription_events_notification_id"
CORRELATION_CONSTRAINT = "uq_subscriptions_store_correlation"

REFUND_SUFFIX = ":refund"


def _charged_kind(kind: EventKind) -> bool:
    return kind in (EventKind.PURCHASED, EventKind.RENEWED, EventKind.RECOVERED)


class SubscriptionTransactionProcessor:
    """
    Applies payment and lifecycle events atomically.

    One instance per database session; every public method commits or rolls
    back before returning.
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: ProductCatalog | None = None,
        clock: Callable[[], datetime] = utc_now,
        default_grace_days: int = 16,
        commit_timeout_seconds: float | None = None,
    ) -> None:
        """
        Initialize processor.

        Args:
            session: Write database session
            catalog: Product catalog (defaults to the products table)
            clock: Source of "now" (injectable for tests)
            default_grace_days: Grace length when a store reports none
            commit_timeout_seconds: Bound on the commit (defaults to the DB command timeout)
        """
        self.session = session
        self.catalog = catalog or DatabaseProductCatalog(session)
        self.event_log = EventLog(session)
        self.entitlements = EntitlementWriter()
        self._clock = clock
        self.default_grace = timedelta(days=default_grace_days)
        self.commit_timeout = (
            commit_timeout_seconds
            if commit_timeout_seconds is not None
            else settings.database_command_timeout_seconds
        )

    # ========================================================================
    # Public operations
    # ========================================================================

    async def apply_payment_event(self, payment: PaymentEvent) -> PaymentApplication:
        """
        Create or advance a subscription from a verified payment.

        A payment already recorded under (store, store_transaction_id)
        returns the existing record with already_applied=True.

        Raises:
            DuplicateNotificationError: Notification id already logged
            ProductNotFoundError: Unknown catalog product
            UserNotFoundError: Unknown user
            CorrelationConflictError: Correlation key owned by another user
            InvalidTransitionError: Payment not allowed from current status
            TransactionAbortedError: Unit rolled back, safe to retry
        """
        try:
            return await self._atomic(
                "apply_payment_event",
                lambda: self._apply_payment(payment),
                notification_id=payment.notification_id,
            )
        except ConstraintViolationError as exc:
            if exc.constraint != PAYMENT_CONSTRAINT:
                raise
            # Lost the insert race: the winner's record is the answer
            return await self._payment_race_winner(payment.store, payment.store_transaction_id)

    async def apply_lifecycle_event(
        self, subscription_id: UUID, event: NormalizedEvent
    ) -> LifecycleApplication:
        """
        Apply one normalized event to an existing subscription.

        Stale store events are logged with applied=False and change nothing.

        Raises:
            DuplicateNotificationError: Notification id already logged
            SubscriptionNotFoundError: Unknown subscription
            InvalidTransitionError: Event not allowed from current status
            TransactionAbortedError: Unit rolled back, safe to retry
        """
        try:
            return await self._atomic(
                "apply_lifecycle_event",
                lambda: self._apply_lifecycle(subscription_id, event),
                notification_id=event.notification_id,
            )
        except ConstraintViolationError as exc:
            if exc.constraint != PAYMENT_CONSTRAINT or event.transaction_id is None:
                raise
            winner = await self._payment_race_winner(event.store, event.transaction_id)
            return LifecycleApplication(
                subscription=winner.subscription,
                applied=False,
                payment_record=winner.payment_record,
            )

    async def apply_store_event(self, event: NormalizedEvent) -> LifecycleApplication:
        """
        Route a normalized store event to its subscription by correlation key.

        A Purchased event for an unknown key creates the subscription through
        the payment path, owned by the user in the event's account link.

        Raises:
            SubscriptionNotFoundError: Non-purchase event for an unknown key
            UserNotFoundError: Purchase without a usable account link
            ProductNotFoundError: Store product id not in the catalog
            CorrelationConflictError: Account link names a different owner
        """
        existing = await self._find_subscription_by_key(event.store, event.correlation_key)

        if existing is not None:
            linked_user = self._linked_user_id(event)
            if linked_user is not None and linked_user != existing.user_id:
                raise CorrelationConflictError(event.store, event.correlation_key, existing.user_id)
            return await self.apply_lifecycle_event(existing.id, event)

        if event.kind != EventKind.PURCHASED:
            raise SubscriptionNotFoundError(event.correlation_key, event.store)

        user_id = self._linked_user_id(event)
        if user_id is None:
            raise UserNotFoundError(event.account_token or "unlinked purchase")
        if not event.store_product_id:
            raise MalformedPayloadError(event.store, "Purchase carries no store product id")
        if not event.has_financial_impact:
            raise MalformedPayloadError(event.store, "Purchase carries no store transaction")

        product = await self.catalog.resolve_store_product(event.store, event.store_product_id)
        application = await self.apply_payment_event(
            PaymentEvent.from_event(event, user_id, product.product_id)
        )
        return LifecycleApplication(
            subscription=application.subscription,
            applied=not application.already_applied,
            payment_record=application.payment_record,
        )

    async def cancel_subscription(
        self,
        subscription_id: UUID,
        user_id: UUID,
        immediate: bool = False,
        reason: str | None = None,
    ) -> LifecycleApplication:
        """
        User-initiated cancellation (source api).

        Without `immediate`, auto-renew stops and entitlement runs to the
        period end; with it, the subscription ends now.

        Raises:
            SubscriptionNotFoundError: Unknown subscription or not the caller's
            InvalidTransitionError: Already terminal
        """
        subscription = await self._owned_subscription(subscription_id, user_id)
        event = NormalizedEvent(
            kind=EventKind.CANCELED,
            store=subscription.store,
            correlation_key=subscription.correlation_key,
            event_time=self._clock(),
            source=EventSource.API,
            auto_renewing=False,
            immediate=immediate,
            reason=reason or "user_requested",
        )
        return await self.apply_lifecycle_event(subscription_id, event)

    async def restore_subscription(
        self, subscription_id: UUID, user_id: UUID
    ) -> LifecycleApplication:
        """
        User-initiated re-enable of auto-renew (source api).

        Raises:
            SubscriptionNotFoundError: Unknown subscription or not the caller's
            InvalidTransitionError: Not pending cancellation or otherwise live
        """
        subscription = await self._owned_subscription(subscription_id, user_id)
        event = NormalizedEvent(
            kind=EventKind.RENEWAL_RESTORED,
            store=subscription.store,
            correlation_key=subscription.correlation_key,
            event_time=self._clock(),
            source=EventSource.API,
            auto_renewing=True,
        )
        return await self.apply_lifecycle_event(subscription_id, event)

    async def expire_if_due(
        self, subscription_id: UUID, source: EventSource = EventSource.SWEEP
    ) -> LifecycleApplication:
        """
        Expire a subscription whose effective end has passed.

        The due check is repeated under the row lock, so a renewal that landed
        after the caller selected the row is never overwritten.

        Raises:
            SubscriptionNotFoundError: Unknown subscription
            TransactionAbortedError: Unit rolled back, safe to retry
        """
        located = await self._get_subscription(subscription_id)
        if located is None:
            raise SubscriptionNotFoundError(str(subscription_id))
        event = expiry_event(
            ledger_state_of(located), located.correlation_key, self._clock(), source
        )
        return await self._atomic(
            "expire_if_due",
            lambda: self._apply_lifecycle(subscription_id, event, only_if=is_due_for_expiry),
        )

    async def record_validation(
        self, subscription_id: UUID, checked_at: datetime, success: bool = True
    ) -> None:
        """
        Record a store validation that found no drift (or failed).

        A successful check moves last_validated_at forward and resets the
        failure counter; a failed one increments it.
        """

        async def unit() -> None:
            subscription = await self._lock_subscription(subscription_id)
            if success:
                if subscription.last_validated_at is None or checked_at > subscription.last_validated_at:
                    subscription.last_validated_at = checked_at
                subscription.validation_attempts = 0
            else:
                subscription.validation_attempts = subscription.validation_attempts + 1
            subscription.updated_at = self._clock()
            await self.session.flush()

        await self._atomic("record_validation", unit)

    async def record_processing_error(
        self,
        *,
        error: str,
        event: NormalizedEvent | None = None,
        subscription_id: UUID | None = None,
        user_id: UUID | None = None,
        source: EventSource = EventSource.SYSTEM,
        kind: EventKind = EventKind.RECONCILED,
    ) -> None:
        """
        Log an event that could not be applied, without changing any state.

        A notification id that is already logged is not logged again.
        """

        async def unit() -> None:
            notification_id = event.notification_id if event is not None else None
            if await self.event_log.notification_exists(notification_id):
                return
            self.event_log.append(
                event_kind=event.kind if event is not None else kind,
                source=event.source if event is not None else source,
                event_time=event.event_time if event is not None else self._clock(),
                subscription_id=subscription_id,
                user_id=user_id,
                store=event.store if event is not None else None,
                applied=False,
                notification_id=notification_id,
                notification_type=event.notification_type if event is not None else None,
                raw_notification=event.raw_fields if event is not None else None,
                processing_error=error[:2000],
            )
            await self.session.flush()

        await self._atomic("record_processing_error", unit, notification_id=None)

    async def record_system_event(
        self,
        kind: EventKind,
        source: EventSource,
        tally: dict[str, object],
    ) -> None:
        """Append a system-level event (worker tally) with no subscription."""

        async def unit() -> None:
            self.event_log.append(
                event_kind=kind,
                source=source,
                event_time=self._clock(),
                raw_notification=tally,
            )
            await self.session.flush()

        await self._atomic("record_system_event", unit)

    async def enqueue_unresolved(
        self,
        *,
        store: Store,
        correlation_key: str,
        event_kind: EventKind,
        error: ReferentialMismatchError,
        store_product_id: str | None = None,
        notification_id: str | None = None,
        raw: dict[str, object] | None = None,
    ) -> UUID:
        """
        Put a referential mismatch on the operator queue.

        An open item for the same store key is updated instead of duplicated.
        """

        async def unit() -> UUID:
            stmt = (
                select(UnresolvedNotification)
                .where(
                    UnresolvedNotification.store == store,
                    UnresolvedNotification.correlation_key == correlation_key,
                    UnresolvedNotification.status == UnresolvedStatus.OPEN,
                )
                .with_for_update()
            )
            result = await self.session.execute(stmt)
            item = result.scalars().first()
            now = self._clock()

            if item is None:
                item = UnresolvedNotification(
                    id=uuid4(),
                    store=store,
                    correlation_key=correlation_key,
                    store_product_id=store_product_id,
                    notification_id=notification_id,
                    event_kind=event_kind,
                    reason=str(error),
                    error_kind=type(error).__name__,
                    raw_notification=raw or {},
                    status=UnresolvedStatus.OPEN,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
                self.session.add(item)
            else:
                item.reason = str(error)
                item.error_kind = type(error).__name__
                item.updated_at = now

            await self.session.flush()
            logger.warning(
                "notification_queued_unresolved",
                store=store.value,
                correlation_key=correlation_key[:32],
                error_kind=type(error).__name__,
                item_id=str(item.id),
            )
            return item.id

        return await self._atomic("enqueue_unresolved", unit)

    async def resolve_unresolved(
        self,
        item_id: UUID,
        subscription_id: UUID | None,
        resolved: bool = True,
        reason: str | None = None,
    ) -> None:
        """Close an operator queue item, or count one more failed attempt."""

        async def unit() -> None:
            item = await self.session.get(UnresolvedNotification, item_id, with_for_update=True)
            if item is None:
                raise SubscriptionNotFoundError(str(item_id))
            now = self._clock()
            item.attempts = item.attempts + 1
            item.updated_at = now
            if resolved:
                item.status = UnresolvedStatus.RESOLVED
                item.resolved_at = now
                item.resolved_subscription_id = subscription_id
            elif reason:
                item.reason = reason
            await self.session.flush()

        await self._atomic("resolve_unresolved", unit)

    async def find_subscription(
        self, store: Store, correlation_key: str
    ) -> SubscriptionData | None:
        """Subscription of a store key (read only)."""
        subscription = await self._find_subscription_by_key(store, correlation_key)
        return subscription_to_domain(subscription) if subscription is not None else None

    async def subscription_for_transaction(
        self, store: Store, store_transaction_id: str
    ) -> SubscriptionData | None:
        """Subscription a recorded payment belongs to (read only)."""
        record = await self._find_payment(store, store_transaction_id)
        if record is None:
            return None
        subscription = await self._get_subscription(record.subscription_id)
        return subscription_to_domain(subscription) if subscription is not None else None

    # ========================================================================
    # Units of work
    # ========================================================================

    async def _apply_payment(self, payment: PaymentEvent) -> PaymentApplication:
        await self._ensure_new_notification(payment.notification_id)
        product = await self.catalog.get_product(payment.product_id)

        user = await self._lock_user(payment.user_id)

        existing_payment = await self._find_payment(payment.store, payment.store_transaction_id)
        if existing_payment is not None:
            subscription = await self._get_subscription(existing_payment.subscription_id)
            if subscription is None:
                raise WriteVerificationError(
                    f"Payment {existing_payment.id} references a missing subscription"
                )
            logger.info(
                "payment_already_applied",
                store=payment.store.value,
                store_transaction_id=payment.store_transaction_id,
            )
            metrics.record_event(payment.store.value, "payment", "duplicate")
            return PaymentApplication(
                subscription=subscription_to_domain(subscription),
                payment_record=payment_to_domain(existing_payment),
                already_applied=True,
            )

        subscription = await self._lock_subscription_by_key(payment.store, payment.correlation_key)
        if subscription is not None and subscription.user_id != user.id:
            raise CorrelationConflictError(payment.store, payment.correlation_key, subscription.user_id)

        now = self._clock()
        period_end = self._payment_period_end(payment, product, subscription)
        kind = (
            EventKind.PURCHASED
            if subscription is None or subscription.status in TERMINAL_STATUSES
            else EventKind.RENEWED
        )
        event = NormalizedEvent(
            kind=kind,
            store=payment.store,
            correlation_key=payment.correlation_key,
            event_time=payment.event_time,
            source=payment.source,
            notification_id=payment.notification_id,
            notification_type=payment.notification_type,
            store_product_id=payment.store_product_id,
            transaction_id=payment.store_transaction_id,
            original_transaction_id=payment.original_transaction_id,
            period_end=period_end,
            auto_renewing=payment.auto_renewing,
            amount_minor=payment.amount_minor,
            currency=payment.currency,
            is_trial=payment.is_trial,
            environment=payment.environment,
            raw_fields=payment.raw_fields,
        )

        previous_status: SubscriptionStatus | None = None
        period_end_before: datetime | None = None
        applied = True

        if subscription is None:
            state = initial_state(event, period_end)
            if state.status in ENTITLED_STATUSES and state.effective_end <= now:
                state = replace(state, status=SubscriptionStatus.EXPIRED, auto_renewing=False)
            subscription = Subscription(
                id=uuid4(),
                user_id=user.id,
                product_id=product.product_id,
                store_product_id=payment.store_product_id or product.store_product_id(payment.store),
                store=payment.store,
                correlation_key=payment.correlation_key,
                original_transaction_id=payment.original_transaction_id,
                environment=payment.environment or "production",
                start_date=payment.event_time,
                price_minor=payment.amount_minor or product.price_minor,
                currency=payment.currency,
                validation_attempts=0,
                created_at=now,
                updated_at=now,
            )
            apply_ledger_state(subscription, state)
            self.session.add(subscription)
        else:
            previous_status = subscription.status
            period_end_before = subscription.current_period_end
            decision = apply_event(ledger_state_of(subscription), event, now, self.default_grace)
            applied = decision.applied
            if applied:
                apply_ledger_state(subscription, decision.state)
                subscription.product_id = product.product_id
                if payment.store_product_id:
                    subscription.store_product_id = payment.store_product_id
                if payment.amount_minor > 0:
                    subscription.price_minor = payment.amount_minor
                    subscription.currency = payment.currency
                if kind == EventKind.PURCHASED:
                    subscription.start_date = payment.event_time
                    subscription.cancellation_reason = None
                subscription.updated_at = now

        # Parent row first: the payment references it
        await self.session.flush()

        record = self._new_payment(
            user_id=user.id,
            subscription_id=subscription.id,
            store=payment.store,
            store_transaction_id=payment.store_transaction_id,
            transaction_type=TransactionType.CHARGE,
            amount_minor=payment.amount_minor,
            currency=payment.currency,
            transaction_date=payment.event_time,
            now=now,
        )
        self.session.add(record)
        await self.session.flush()

        subscriptions = await self._load_user_subscriptions(user.id)
        self.entitlements.write(
            user,
            subscriptions,
            now,
            last_payment_at=payment.event_time if payment.amount_minor > 0 else None,
        )

        self.event_log.append(
            event_kind=kind,
            source=payment.source,
            event_time=payment.event_time,
            subscription_id=subscription.id,
            user_id=user.id,
            store=payment.store,
            previous_status=previous_status,
            new_status=subscription.status,
            period_end_before=period_end_before,
            period_end_after=subscription.current_period_end,
            applied=applied,
            notification_id=payment.notification_id,
            notification_type=payment.notification_type,
            raw_notification=payment.raw_fields,
            amount_minor=payment.amount_minor,
            currency=payment.currency,
            payment_record_id=record.id,
        )
        await self.session.flush()

        verified_subscription = await self._verify(Subscription, subscription.id)
        verified_record = await self._verify(PaymentRecord, record.id)

        metrics.record_payment(payment.store.value, TransactionType.CHARGE.value, payment.amount_minor)
        metrics.record_event(payment.store.value, kind.value, "applied" if applied else "stale")
        logger.info(
            "payment_applied",
            subscription_id=str(subscription.id),
            user_id=str(user.id),
            store=payment.store.value,
            event_kind=kind.value,
            previous_status=previous_status.value if previous_status else None,
            new_status=subscription.status.value,
            amount_minor=payment.amount_minor,
            currency=payment.currency,
            period_end=subscription.current_period_end.isoformat(),
        )

        return PaymentApplication(
            subscription=subscription_to_domain(verified_subscription),
            payment_record=payment_to_domain(verified_record),
        )

    async def _apply_lifecycle(
        self,
        subscription_id: UUID,
        event: NormalizedEvent,
        only_if: Callable[[LedgerState, datetime], bool] | None = None,
    ) -> LifecycleApplication:
        await self._ensure_new_notification(event.notification_id)

        located = await self._get_subscription(subscription_id)
        if located is None or located.store != event.store:
            raise SubscriptionNotFoundError(str(subscription_id), event.store)

        user = await self._lock_user(located.user_id)
        subscription = await self._lock_subscription(subscription_id)

        now = self._clock()
        previous = ledger_state_of(subscription)
        if only_if is not None and not only_if(previous, now):
            # Re-checked under the lock; another writer already moved it
            return LifecycleApplication(
                subscription=subscription_to_domain(subscription),
                applied=False,
                previous_status=previous.status,
            )
        decision = apply_event(previous, event, now, self.default_grace)

        if decision.applied:
            apply_ledger_state(subscription, decision.state)
            if event.kind == EventKind.CANCELED:
                subscription.cancellation_reason = event.reason
            elif event.kind in (EventKind.RENEWAL_RESTORED, EventKind.PURCHASED):
                subscription.cancellation_reason = None
            if event.store_product_id and _charged_kind(event.kind):
                subscription.store_product_id = event.store_product_id
            if event.kind == EventKind.PURCHASED:
                subscription.start_date = event.event_time
            subscription.updated_at = now

        record: PaymentRecord | None = None
        new_record = False
        if event.has_financial_impact and event.transaction_id is not None:
            record = await self._find_payment(event.store, event.transaction_id)
            if record is None:
                record = await self._record_event_payment(user, subscription, event, now)
                new_record = True

        subscriptions = await self._load_user_subscriptions(user.id)
        self.entitlements.write(
            user,
            subscriptions,
            now,
            last_payment_at=(
                event.event_time
                if new_record and _charged_kind(event.kind) and (event.amount_minor or 0) > 0
                else None
            ),
        )

        self.event_log.append(
            event_kind=event.kind,
            source=event.source,
            event_time=event.event_time,
            subscription_id=subscription.id,
            user_id=user.id,
            store=event.store,
            previous_status=previous.status,
            new_status=subscription.status,
            period_end_before=previous.current_period_end,
            period_end_after=subscription.current_period_end,
            applied=decision.applied,
            notification_id=event.notification_id,
            notification_type=event.notification_type,
            raw_notification=event.raw_fields,
            amount_minor=event.amount_minor if new_record else None,
            currency=event.currency if new_record else None,
            payment_record_id=record.id if record is not None and new_record else None,
        )
        await self.session.flush()

        verified = await self._verify(Subscription, subscription.id)

        outcome = "applied" if decision.applied else "stale"
        metrics.record_event(event.store.value, event.kind.value, outcome)
        if decision.stale:
            logger.warning(
                "stale_event_not_applied",
                subscription_id=str(subscription.id),
                event_kind=event.kind.value,
                event_time=event.event_time.isoformat(),
                last_validated_at=(
                    previous.last_validated_at.isoformat() if previous.last_validated_at else None
                ),
            )
        else:
            logger.info(
                "lifecycle_event_applied",
                subscription_id=str(subscription.id),
                store=event.store.value,
                source=event.source.value,
                event_kind=event.kind.value,
                previous_status=previous.status.value,
                new_status=subscription.status.value,
                period_end=subscription.current_period_end.isoformat(),
            )

        return LifecycleApplication(
            subscription=subscription_to_domain(verified),
            applied=decision.applied,
            payment_record=payment_to_domain(record) if record is not None else None,
            previous_status=previous.status,
        )

    async def _record_event_payment(
        self,
        user: User,
        subscription: Subscription,
        event: NormalizedEvent,
        now: datetime,
    ) -> PaymentRecord:
        """Insert the charge or refund a financial lifecycle event carries."""
        transaction_id = event.transaction_id or ""
        currency = event.currency or subscription.currency

        original: PaymentRecord | None = None
        if event.kind == EventKind.REVOKED:
            transaction_type = TransactionType.REFUND
            amount_minor = -(event.amount_minor or 0)
            original_ref = (
                transaction_id[: -len(REFUND_SUFFIX)]
                if transaction_id.endswith(REFUND_SUFFIX)
                else event.original_transaction_id
            )
            if original_ref:
                original = await self._find_payment(event.store, original_ref)
            if original is not None:
                original.status = PaymentStatus.REFUNDED
        else:
            transaction_type = TransactionType.CHARGE
            amount_minor = event.amount_minor or 0

        record = self._new_payment(
            user_id=user.id,
            subscription_id=subscription.id,
            store=event.store,
            store_transaction_id=transaction_id,
            transaction_type=transaction_type,
            amount_minor=amount_minor,
            currency=currency,
            transaction_date=event.event_time,
            now=now,
            original_payment_id=original.id if original is not None else None,
        )
        self.session.add(record)
        await self.session.flush()
        await self._verify(PaymentRecord, record.id)

        metrics.record_payment(event.store.value, transaction_type.value, amount_minor)
        return record

    # ========================================================================
    # Transaction plumbing
    # ========================================================================

    async def _atomic(
        self,
        operation: str,
        unit: Callable[[], Awaitable[T]],
        notification_id: str | None = None,
    ) -> T:
        """Run one unit of work and commit, or roll everything back."""
        start = time.time()
        with trace_operation(f"processor.{operation}", operation=operation):
            try:
                result = await unit()
                await asyncio.wait_for(self.session.commit(), timeout=self.commit_timeout)
            except IntegrityError as exc:
                await self.session.rollback()
                metrics.record_error("IntegrityError", operation)
                raise self._classify_integrity_error(operation, exc, notification_id) from exc
            except SubscriptionLedgerError as exc:
                await self.session.rollback()
                metrics.record_error(type(exc).__name__, operation)
                raise
            except TimeoutError as exc:
                await self.session.rollback()
                metrics.record_error("TimeoutError", operation)
                logger.error("transaction_timed_out", operation=operation, timeout=self.commit_timeout)
                raise TransactionAbortedError(operation, "database operation timed out") from exc
            except Exception as exc:
                await self.session.rollback()
                metrics.record_error(type(exc).__name__, operation)
                logger.exception("transaction_aborted", operation=operation)
                raise TransactionAbortedError(operation, str(exc)) from exc

        metrics.record_transaction(operation, time.time() - start)
        return result

    @staticmethod
    def _classify_integrity_error(
        operation: str, exc: IntegrityError, notification_id: str | None
    ) -> SubscriptionLedgerError:
        message = str(exc.orig) if exc.orig is not None else str(exc)
        if NOTIFICATION_CONSTRAINT in message and notification_id is not None:
            return DuplicateNotificationError(notification_id)
        if PAYMENT_CONSTRAINT in message:
            return ConstraintViolationError(PAYMENT_CONSTRAINT)
        if CORRELATION_CONSTRAINT in message:
            # Concurrent first purchase for the same key; a retry finds the row
            return TransactionAbortedError(operation, "concurrent subscription creation")
        return TransactionAbortedError(operation, message)

    async def _payment_race_winner(
        self, store: Store, store_transaction_id: str
    ) -> PaymentApplication:
        record = await self._find_payment(store, store_transaction_id)
        if record is None:
            raise TransactionAbortedError("apply_payment_event", "payment race without winner")
        subscription = await self._get_subscription(record.subscription_id)
        if subscription is None:
            raise TransactionAbortedError("apply_payment_event", "winner subscription missing")
        logger.info(
            "payment_race_lost",
            store=store.value,
            store_transaction_id=store_transaction_id,
        )
        return PaymentApplication(
            subscription=subscription_to_domain(subscription),
            payment_record=payment_to_domain(record),
            already_applied=True,
        )

    async def _verify(self, model: type[T], row_id: UUID) -> T:
        """Re-read a row after flush (write verification)."""
        row = await self.session.get(model, row_id)
        metrics.record_write_verification(row is not None)
        if row is None:
            raise WriteVerificationError(f"{model.__name__} {row_id} not found after write")
        return row

    async def _ensure_new_notification(self, notification_id: str | None) -> None:
        if notification_id is not None and await self.event_log.notification_exists(notification_id):
            raise DuplicateNotificationError(notification_id)

    # ========================================================================
    # Row access
    # ========================================================================

    async def _lock_user(self, user_id: UUID) -> User:
        """Lock the user row (SELECT FOR UPDATE); always taken before the subscription."""
        # Locked reads refresh rows already in the identity map
        stmt = (
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        user = result.scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(str(user_id))
        return user

    async def _get_subscription(self, subscription_id: UUID) -> Subscription | None:
        return await self.session.get(Subscription, subscription_id)

    async def _lock_subscription(self, subscription_id: UUID) -> Subscription:
        stmt = (
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(str(subscription_id))
        return subscription

    async def _lock_subscription_by_key(
        self, store: Store, correlation_key: str
    ) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(Subscription.store == store, Subscription.correlation_key == correlation_key)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_subscription_by_key(
        self, store: Store, correlation_key: str
    ) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.store == store, Subscription.correlation_key == correlation_key
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_payment(self, store: Store, store_transaction_id: str) -> PaymentRecord | None:
        stmt = select(PaymentRecord).where(
            PaymentRecord.store == store,
            PaymentRecord.store_transaction_id == store_transaction_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _load_user_subscriptions(self, user_id: UUID) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _owned_subscription(self, subscription_id: UUID, user_id: UUID) -> Subscription:
        subscription = await self._get_subscription(subscription_id)
        if subscription is None or subscription.user_id != user_id:
            raise SubscriptionNotFoundError(str(subscription_id))
        return subscription

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _linked_user_id(event: NormalizedEvent) -> UUID | None:
        """User from the store account link (obfuscated account id / appAccountToken)."""
        if not event.account_token:
            return None
        try:
            return UUID(event.account_token)
        except ValueError:
            return None

    @staticmethod
    def _payment_period_end(
        payment: PaymentEvent,
        product: ProductData,
        subscription: Subscription | None,
    ) -> datetime:
        """Explicit period end, else one billing period after the paid-through date."""
        if payment.period_end is not None:
            return payment.period_end
        if payment.is_trial and product.trial_period_days > 0:
            return payment.event_time + timedelta(days=product.trial_period_days)

        start = payment.event_time
        if (
            subscription is not None
            and subscription.status in ENTITLED_STATUSES
            and subscription.current_period_end > start
        ):
            start = subscription.current_period_end
        return add_billing_period(start, product.billing_period)

    @staticmethod
    def _new_payment(
        *,
        user_id: UUID,
        subscription_id: UUID,
        store: Store,
        store_transaction_id: str,
        transaction_type: TransactionType,
        amount_minor: int,
        currency: str,
        transaction_date: datetime,
        now: datetime,
        original_payment_id: UUID | None = None,
    ) -> PaymentRecord:
        return PaymentRecord(
            id=uuid4(),
            user_id=user_id,
            subscription_id=subscription_id,
            store=store,
            store_transaction_id=store_transaction_id,
            transaction_type=transaction_type,
            amount_minor=amount_minor,
            currency=currency,
            status=PaymentStatus.COMPLETED,
            transaction_date=transaction_date,
            original_payment_id=original_payment_id,
            exported=False,
            created_at=now,
        )
