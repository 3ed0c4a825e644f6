"""
Reconciliation Worker - Heals drift between local state and the stores.

NO DICTIONARIES - All data uses strongly typed models.

Each pass:
1. Retries the operator queue of unresolved notifications
2. Validates every active, grace and pending-cancellation subscription
   against its store and routes any drift through the transaction processor
3. Appends a Reconciled tally event

Store calls never run inside a database transaction: a snapshot is read in
one session, the store is called, and the result is applied in a new one.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subledger.db.models import Subscription, UnresolvedNotification, utc_now
from subledger.exceptions import (
    MalformedPayloadError,
    ReferentialMismatchError,
    StoreNotConfiguredError,
    StoreRejectedError,
    StoreUnavailableError,
    SubscriptionLedgerError,
    SubscriptionNotFoundError,
    UnsupportedStoreOperationError,
)
from subledger.models.api import (
    EventKind,
    EventSource,
    Store,
    SubscriptionStatus,
    UnresolvedStatus,
)
from subledger.models.domain import (
    LifecycleApplication,
    NormalizedEvent,
    StoreState,
    StoreSubscriptionState,
    SubscriptionData,
    WorkerResult,
)
from subledger.observability.metrics import metrics
from subledger.services.billing_client import StoreClients
from subledger.services.ledger import RECONCILABLE_STATUSES
from subledger.services.normalizer import purchase_event_from_store_state
from subledger.services.records import subscription_to_domain
from subledger.services.transaction_processor import SubscriptionTransactionProcessor
from subledger.workers.base import PeriodicWorker, SessionFactory

logger = get_logger(__name__)

S = SubscriptionStatus

DRIFT_REASON = "reconciliation_drift"
GONE_STATUS_CODE = 410


@dataclass(frozen=True)
class UnresolvedItem:
    """Snapshot of one open operator queue item."""

    item_id: UUID
    store: Store
    correlation_key: str
    store_product_id: str | None
    event_kind: EventKind


def _drift_event(
    kind: EventKind,
    snapshot: SubscriptionData,
    state: StoreSubscriptionState,
    *,
    charge: bool = False,
    period_end: datetime | None = None,
    grace_period_end: datetime | None = None,
    auto_renewing: bool | None = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        kind=kind,
        store=snapshot.store,
        correlation_key=snapshot.correlation_key,
        event_time=state.checked_at,
        source=EventSource.RECONCILIATION,
        store_product_id=state.store_product_id,
        transaction_id=state.latest_transaction_id if charge else None,
        original_transaction_id=state.original_transaction_id,
        period_end=period_end,
        grace_period_end=grace_period_end,
        auto_renewing=auto_renewing,
        amount_minor=state.amount_minor if charge else None,
        currency=state.currency.upper() if charge and state.currency else None,
        environment=state.environment,
        reason=DRIFT_REASON,
    )


def detect_drift(
    snapshot: SubscriptionData, state: StoreSubscriptionState
) -> NormalizedEvent | None:
    """
    Compare local state with the store's and synthesize the correcting event.

    Returns None when the two agree.
    """
    local = snapshot.status

    if state.state == StoreState.ACTIVE:
        if local == S.GRACE:
            return _drift_event(
                EventKind.RECOVERED,
                snapshot,
                state,
                charge=True,
                period_end=state.expires_at,
                auto_renewing=state.auto_renewing,
            )
        if state.expires_at > snapshot.current_period_end:
            return _drift_event(
                EventKind.RENEWED,
                snapshot,
                state,
                charge=True,
                period_end=state.expires_at,
                auto_renewing=state.auto_renewing,
            )
        if local == S.PENDING_CANCELLATION:
            return _drift_event(EventKind.RENEWAL_RESTORED, snapshot, state, auto_renewing=True)
        return None

    if state.state == StoreState.CANCELED_PENDING:
        if local in (S.ACTIVE, S.GRACE):
            return _drift_event(
                EventKind.CANCELED,
                snapshot,
                state,
                period_end=state.expires_at,
                auto_renewing=False,
            )
        if local == S.PENDING_CANCELLATION and state.expires_at > snapshot.current_period_end:
            return _drift_event(
                EventKind.RENEWAL_EXTENDED, snapshot, state, period_end=state.expires_at
            )
        return None

    if state.state == StoreState.GRACE:
        if local == S.GRACE:
            return None
        return _drift_event(
            EventKind.GRACE_PERIOD_ENTERED,
            snapshot,
            state,
            grace_period_end=state.grace_period_end,
        )

    if state.state == StoreState.PAUSED:
        if local == S.ACTIVE and snapshot.store == Store.MOBILE:
            return _drift_event(EventKind.PAUSED, snapshot, state)
        return _drift_event(EventKind.EXPIRED, snapshot, state, auto_renewing=False)

    if state.state == StoreState.REVOKED:
        return _drift_event(EventKind.REVOKED, snapshot, state, auto_renewing=False)

    # ON_HOLD and EXPIRED: no entitlement at the store
    return _drift_event(EventKind.EXPIRED, snapshot, state, auto_renewing=False)


def gone_event(snapshot: SubscriptionData, now: datetime) -> NormalizedEvent:
    """Expired event for a purchase the store no longer knows (HTTP 410)."""
    return NormalizedEvent(
        kind=EventKind.EXPIRED,
        store=snapshot.store,
        correlation_key=snapshot.correlation_key,
        event_time=now,
        source=EventSource.RECONCILIATION,
        auto_renewing=False,
        reason="store_record_gone",
    )


class ReconciliationWorker(PeriodicWorker):
    """Validates live subscriptions against their stores."""

    name = "reconciliation"

    def __init__(
        self,
        session_factory: SessionFactory,
        clients: StoreClients,
        interval_seconds: float,
        batch_size: int = 500,
        default_grace_days: int = 16,
        max_unresolved_attempts: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(session_factory, interval_seconds, clock=clock)
        self.clients = clients
        self.batch_size = batch_size
        self.default_grace_days = default_grace_days
        self.max_unresolved_attempts = max_unresolved_attempts

    def _processor(self, session: AsyncSession) -> SubscriptionTransactionProcessor:
        return SubscriptionTransactionProcessor(
            session, clock=self.clock, default_grace_days=self.default_grace_days
        )

    # ========================================================================
    # Pass
    # ========================================================================

    async def _run(self) -> WorkerResult:
        resolved = await self.drain_unresolved()

        snapshots = await self.load_reconcilable()
        logger.info("reconciliation_started", subscriptions=len(snapshots), resolved=resolved)

        updated = 0
        expired = 0
        errors = 0
        for snapshot in snapshots:
            try:
                application = await self._reconcile(snapshot)
            except (SubscriptionLedgerError, SQLAlchemyError) as exc:
                errors += 1
                metrics.record_worker_item(self.name, "error")
                logger.error(
                    "reconciliation_item_failed",
                    subscription_id=str(snapshot.subscription_id),
                    store=snapshot.store.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                await self._record_error(snapshot, exc)
                continue

            if application is None or not application.applied:
                metrics.record_worker_item(self.name, "unchanged")
                continue
            updated += 1
            if application.subscription.status == S.EXPIRED:
                expired += 1
            metrics.record_worker_item(self.name, "updated")

        result = WorkerResult(
            worker=self.name,
            processed=len(snapshots),
            updated=updated,
            expired=expired,
            errors=errors,
            resolved=resolved,
        )
        await self._record_tally(result)
        return result

    async def load_reconcilable(self) -> list[SubscriptionData]:
        """Live subscriptions, least recently validated first."""
        stmt = (
            select(Subscription)
            .where(Subscription.status.in_(RECONCILABLE_STATUSES))
            .order_by(Subscription.last_validated_at.asc().nulls_first())
            .limit(self.batch_size)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [subscription_to_domain(row) for row in result.scalars().all()]

    async def reconcile_subscription(self, subscription_id: UUID) -> LifecycleApplication | None:
        """
        Reconcile one subscription now (verify endpoint).

        Returns:
            The applied correction, or None when local state already matched

        Raises:
            SubscriptionNotFoundError: Unknown subscription
            StoreUnavailableError: Store kept failing transiently
            StoreNotConfiguredError: No client for the subscription's store
        """
        async with self.session_factory() as session:
            row = await session.get(Subscription, subscription_id)
            if row is None:
                raise SubscriptionNotFoundError(str(subscription_id))
            snapshot = subscription_to_domain(row)
        return await self._reconcile(snapshot)

    async def _reconcile(self, snapshot: SubscriptionData) -> LifecycleApplication | None:
        now = self.clock()

        if snapshot.store == Store.WEB and not snapshot.correlation_key.startswith("sub_"):
            # One-off web payments have no store state; the dates decide
            async with self.session_factory() as session:
                return await self._processor(session).expire_if_due(
                    snapshot.subscription_id, EventSource.SYSTEM
                )

        client = self.clients.for_store(snapshot.store)
        try:
            state = await client.validate_subscription(
                snapshot.store_product_id, snapshot.correlation_key, now
            )
        except StoreUnavailableError:
            async with self.session_factory() as session:
                await self._processor(session).record_validation(
                    snapshot.subscription_id, now, success=False
                )
            raise
        except StoreRejectedError as exc:
            if exc.status_code != GONE_STATUS_CODE:
                raise
            logger.warning(
                "store_record_gone",
                subscription_id=str(snapshot.subscription_id),
                store=snapshot.store.value,
            )
            return await self._apply(snapshot, gone_event(snapshot, now))

        event = detect_drift(snapshot, state)
        if event is None:
            async with self.session_factory() as session:
                await self._processor(session).record_validation(
                    snapshot.subscription_id, state.checked_at
                )
            return None

        logger.info(
            "reconciliation_drift_detected",
            subscription_id=str(snapshot.subscription_id),
            store=snapshot.store.value,
            local_status=snapshot.status.value,
            store_state=state.state.value,
            correction=event.kind.value,
        )
        return await self._apply(snapshot, event)

    async def _apply(
        self, snapshot: SubscriptionData, event: NormalizedEvent
    ) -> LifecycleApplication:
        async with self.session_factory() as session:
            return await self._processor(session).apply_lifecycle_event(
                snapshot.subscription_id, event
            )

    # ========================================================================
    # Operator queue
    # ========================================================================

    async def load_unresolved(self) -> list[UnresolvedItem]:
        stmt = (
            select(UnresolvedNotification)
            .where(
                UnresolvedNotification.status == UnresolvedStatus.OPEN,
                UnresolvedNotification.attempts < self.max_unresolved_attempts,
            )
            .order_by(UnresolvedNotification.created_at)
            .limit(self.batch_size)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [
                UnresolvedItem(
                    item_id=row.id,
                    store=row.store,
                    correlation_key=row.correlation_key,
                    store_product_id=row.store_product_id,
                    event_kind=row.event_kind,
                )
                for row in result.scalars().all()
            ]

    async def drain_unresolved(self) -> int:
        """Retry open queue items; returns how many were resolved."""
        items = await self.load_unresolved()
        resolved = 0
        for item in items:
            try:
                if await self._retry_unresolved(item):
                    resolved += 1
            except (SubscriptionLedgerError, SQLAlchemyError) as exc:
                logger.error(
                    "unresolved_retry_failed",
                    item_id=str(item.item_id),
                    store=item.store.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        if items:
            logger.info("unresolved_queue_drained", attempted=len(items), resolved=resolved)
        return resolved

    async def _retry_unresolved(self, item: UnresolvedItem) -> bool:
        existing = await self._subscription_id_for_key(item.store, item.correlation_key)
        if existing is not None:
            # The purchase arrived since; the regular pass takes it from here
            await self._close_item(item, existing)
            return True

        try:
            client = self.clients.for_store(item.store)
            state = await client.validate_subscription(
                item.store_product_id, item.correlation_key, self.clock()
            )
        except (StoreRejectedError, UnsupportedStoreOperationError, StoreNotConfiguredError) as exc:
            await self._bump_item(item, f"store validation failed: {exc}")
            return False

        if not state.grants_entitlement:
            await self._bump_item(item, f"store reports {state.state.value}")
            return False

        try:
            event = purchase_event_from_store_state(state, EventSource.RECONCILIATION)
            async with self.session_factory() as session:
                application = await self._processor(session).apply_store_event(event)
        except (ReferentialMismatchError, MalformedPayloadError) as exc:
            await self._bump_item(item, str(exc))
            return False

        await self._close_item(item, application.subscription.subscription_id)
        logger.info(
            "unresolved_notification_resolved",
            item_id=str(item.item_id),
            subscription_id=str(application.subscription.subscription_id),
        )
        return True

    async def _subscription_id_for_key(self, store: Store, correlation_key: str) -> UUID | None:
        stmt = select(Subscription.id).where(
            Subscription.store == store, Subscription.correlation_key == correlation_key
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def _close_item(self, item: UnresolvedItem, subscription_id: UUID) -> None:
        async with self.session_factory() as session:
            await self._processor(session).resolve_unresolved(item.item_id, subscription_id)

    async def _bump_item(self, item: UnresolvedItem, reason: str) -> None:
        async with self.session_factory() as session:
            await self._processor(session).resolve_unresolved(
                item.item_id, None, resolved=False, reason=reason
            )

    # ========================================================================
    # Audit
    # ========================================================================

    async def _record_error(self, snapshot: SubscriptionData, exc: Exception) -> None:
        try:
            async with self.session_factory() as session:
                await self._processor(session).record_processing_error(
                    error=f"{type(exc).__name__}: {exc}",
                    subscription_id=snapshot.subscription_id,
                    user_id=snapshot.user_id,
                    source=EventSource.RECONCILIATION,
                )
        except (SubscriptionLedgerError, SQLAlchemyError):
            logger.exception(
                "processing_error_not_recorded", subscription_id=str(snapshot.subscription_id)
            )

    async def _record_tally(self, result: WorkerResult) -> None:
        async with self.session_factory() as session:
            await self._processor(session).record_system_event(
                EventKind.RECONCILED,
                EventSource.RECONCILIATION,
                {
                    "worker": result.worker,
                    "processed": result.processed,
                    "updated": result.updated,
                    "expired": result.expired,
                    "errors": result.errors,
                    "resolved": result.resolved,
                },
            )
