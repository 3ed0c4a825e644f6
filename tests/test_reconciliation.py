"""
Tests for drift detection and the reconciliation worker.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from subledger.exceptions import (
    StoreRejectedError,
    StoreUnavailableError,
    SubscriptionNotFoundError,
    UserNotFoundError,
)
from subledger.models.api import EventKind, EventSource, Store, SubscriptionStatus
from subledger.models.domain import (
    LifecycleApplication,
    StoreState,
    StoreSubscriptionState,
    SubscriptionData,
)
from subledger.services.records import subscription_to_domain
from subledger.workers.reconciliation import (
    ReconciliationWorker,
    UnresolvedItem,
    detect_drift,
    gone_event,
)
from factories import NOW, create_subscription

S = SubscriptionStatus


def snapshot(
    status: SubscriptionStatus = S.ACTIVE,
    store: Store = Store.MOBILE,
    correlation_key: str = "purchase-token-0001",
    current_period_end=None,
) -> SubscriptionData:
    return subscription_to_domain(
        create_subscription(
            status=status,
            store=store,
            correlation_key=correlation_key,
            current_period_end=current_period_end,
        )
    )


def store_state(state: StoreState, **overrides) -> StoreSubscriptionState:
    fields = {
        "store": Store.MOBILE,
        "correlation_key": "purchase-token-0001",
        "state": state,
        "expires_at": NOW + timedelta(days=10),
        "checked_at": NOW,
        "auto_renewing": True,
        "store_product_id": "pro.monthly",
        "latest_transaction_id": "GPA.1234-5678-9012-34567..3",
        "original_transaction_id": "GPA.1234-5678-9012-34567",
        "amount_minor": 999,
        "currency": "usd",
    }
    fields.update(overrides)
    return StoreSubscriptionState(**fields)


# ============================================================================
# Drift detection
# ============================================================================


class TestDetectDrift:
    """Tests for detect_drift."""

    def test_agreement(self):
        """Test that matching local and store state produce no event."""
        assert detect_drift(snapshot(), store_state(StoreState.ACTIVE)) is None

    def test_missed_renewal(self):
        """Test that a later store expiry becomes a charged renewal."""
        later = NOW + timedelta(days=40)

        event = detect_drift(snapshot(), store_state(StoreState.ACTIVE, expires_at=later))

        assert event.kind == EventKind.RENEWED
        assert event.source == EventSource.RECONCILIATION
        assert event.event_time == NOW
        assert event.period_end == later
        assert event.transaction_id == "GPA.1234-5678-9012-34567..3"
        assert event.currency == "USD"
        assert event.has_financial_impact is True

    def test_recovered_from_grace(self):
        """Test that an active store state ends local grace."""
        event = detect_drift(snapshot(S.GRACE), store_state(StoreState.ACTIVE))

        assert event.kind == EventKind.RECOVERED

    def test_restored_renewal(self):
        """Test that auto-renew switched back on at the store is picked up."""
        event = detect_drift(snapshot(S.PENDING_CANCELLATION), store_state(StoreState.ACTIVE))

        assert event.kind == EventKind.RENEWAL_RESTORED
        assert event.auto_renewing is True
        assert event.transaction_id is None

    def test_missed_cancellation(self):
        """Test that a store-side cancellation is applied."""
        event = detect_drift(
            snapshot(), store_state(StoreState.CANCELED_PENDING, auto_renewing=False)
        )

        assert event.kind == EventKind.CANCELED
        assert event.auto_renewing is False

    def test_pending_cancellation_agrees(self):
        """Test that a pending cancellation matching the store is left alone."""
        event = detect_drift(
            snapshot(S.PENDING_CANCELLATION),
            store_state(StoreState.CANCELED_PENDING, auto_renewing=False),
        )

        assert event is None

    def test_grace_entered(self):
        """Test that store grace is mirrored with the store's grace end."""
        grace_end = NOW + timedelta(days=16)

        event = detect_drift(
            snapshot(), store_state(StoreState.GRACE, grace_period_end=grace_end)
        )

        assert event.kind == EventKind.GRACE_PERIOD_ENTERED
        assert event.grace_period_end == grace_end

    def test_paused_on_mobile(self):
        """Test that a mobile pause is mirrored."""
        event = detect_drift(snapshot(), store_state(StoreState.PAUSED))

        assert event.kind == EventKind.PAUSED

    def test_paused_elsewhere_expires(self):
        """Test that a pause outside the mobile store ends entitlement."""
        event = detect_drift(
            snapshot(store=Store.APPSTORE),
            store_state(StoreState.PAUSED, store=Store.APPSTORE),
        )

        assert event.kind == EventKind.EXPIRED

    def test_revoked(self):
        """Test that a store revocation is mirrored."""
        event = detect_drift(snapshot(), store_state(StoreState.REVOKED))

        assert event.kind == EventKind.REVOKED

    @pytest.mark.parametrize("state", [StoreState.ON_HOLD, StoreState.EXPIRED])
    def test_no_entitlement_at_store(self, state):
        """Test that hold and expiry at the store expire locally."""
        event = detect_drift(snapshot(), store_state(state))

        assert event.kind == EventKind.EXPIRED
        assert event.reason == "reconciliation_drift"

    def test_gone_event(self):
        """Test the event for a purchase the store no longer knows."""
        event = gone_event(snapshot(), NOW)

        assert event.kind == EventKind.EXPIRED
        assert event.reason == "store_record_gone"
        assert event.source == EventSource.RECONCILIATION


# ============================================================================
# Worker
# ============================================================================


@pytest.fixture
def processor():
    with patch("subledger.workers.reconciliation.SubscriptionTransactionProcessor") as cls:
        instance = cls.return_value
        instance.apply_lifecycle_event = AsyncMock()
        instance.apply_store_event = AsyncMock()
        instance.expire_if_due = AsyncMock()
        instance.record_validation = AsyncMock()
        instance.record_processing_error = AsyncMock()
        instance.record_system_event = AsyncMock()
        instance.resolve_unresolved = AsyncMock()
        yield instance


@pytest.fixture
def worker(session_factory, store_clients):
    return ReconciliationWorker(
        session_factory, store_clients, interval_seconds=60, clock=lambda: NOW
    )


def applied(status: SubscriptionStatus = S.ACTIVE) -> LifecycleApplication:
    return LifecycleApplication(subscription=snapshot(status), applied=True)


class TestReconcile:
    """Tests for one subscription's reconciliation."""

    async def test_no_drift_records_validation(self, worker, processor, store_client):
        """Test that agreement only moves the validation time."""
        store_client.validate_subscription.return_value = store_state(StoreState.ACTIVE)
        local = snapshot()

        result = await worker._reconcile(local)

        assert result is None
        processor.record_validation.assert_awaited_once_with(local.subscription_id, NOW)
        processor.apply_lifecycle_event.assert_not_awaited()

    async def test_drift_is_applied(self, worker, processor, store_client):
        """Test that drift goes through the processor."""
        store_client.validate_subscription.return_value = store_state(StoreState.EXPIRED)
        processor.apply_lifecycle_event.return_value = applied(S.EXPIRED)
        local = snapshot()

        await worker._reconcile(local)

        subscription_id, event = processor.apply_lifecycle_event.await_args.args
        assert subscription_id == local.subscription_id
        assert event.kind == EventKind.EXPIRED

    async def test_store_record_gone(self, worker, processor, store_client):
        """Test that HTTP 410 from the store expires the subscription."""
        store_client.validate_subscription.side_effect = StoreRejectedError(
            Store.MOBILE, "subscriptions.get", 410, "purchase token no longer valid"
        )

        await worker._reconcile(snapshot())

        _, event = processor.apply_lifecycle_event.await_args.args
        assert event.reason == "store_record_gone"

    async def test_other_rejection_propagates(self, worker, processor, store_client):
        """Test that other store rejections are errors for this item."""
        store_client.validate_subscription.side_effect = StoreRejectedError(
            Store.MOBILE, "subscriptions.get", 401, "bad credentials"
        )

        with pytest.raises(StoreRejectedError):
            await worker._reconcile(snapshot())

        processor.apply_lifecycle_event.assert_not_awaited()

    async def test_store_unavailable_counts_attempt(self, worker, processor, store_client):
        """Test that an unreachable store counts a failed validation."""
        store_client.validate_subscription.side_effect = StoreUnavailableError(
            Store.MOBILE, "subscriptions.get", "timeout", attempts=4
        )
        local = snapshot()

        with pytest.raises(StoreUnavailableError):
            await worker._reconcile(local)

        processor.record_validation.assert_awaited_once_with(
            local.subscription_id, NOW, success=False
        )

    async def test_web_payment_without_subscription(self, worker, processor, store_client):
        """Test that one-off web payments are date driven."""
        local = snapshot(store=Store.WEB, correlation_key="pi_123")

        await worker._reconcile(local)

        processor.expire_if_due.assert_awaited_once_with(local.subscription_id, EventSource.SYSTEM)
        store_client.validate_subscription.assert_not_awaited()

    async def test_reconcile_unknown_subscription(self, worker):
        """Test that verifying a missing subscription raises."""
        with pytest.raises(SubscriptionNotFoundError):
            await worker.reconcile_subscription(uuid4())


class TestReconciliationPass:
    """Tests for a full pass."""

    async def test_tally(self, worker, processor):
        """Test that one failing item does not stop the pass."""
        with (
            patch.object(worker, "drain_unresolved", AsyncMock(return_value=1)),
            patch.object(
                worker, "load_reconcilable", AsyncMock(return_value=[snapshot(), snapshot()])
            ),
            patch.object(
                worker,
                "_reconcile",
                AsyncMock(
                    side_effect=[
                        applied(S.EXPIRED),
                        StoreUnavailableError(Store.MOBILE, "get", "timeout"),
                    ]
                ),
            ),
        ):
            result = await worker.run_once()

        assert result.processed == 2
        assert result.updated == 1
        assert result.expired == 1
        assert result.errors == 1
        assert result.resolved == 1
        assert worker.last_result == result
        processor.record_processing_error.assert_awaited_once()
        kind, source, tally = processor.record_system_event.await_args.args
        assert kind == EventKind.RECONCILED
        assert source == EventSource.RECONCILIATION
        assert tally["errors"] == 1


def unresolved_item() -> UnresolvedItem:
    return UnresolvedItem(
        item_id=uuid4(),
        store=Store.MOBILE,
        correlation_key="purchase-token-0001",
        store_product_id="pro.monthly",
        event_kind=EventKind.PURCHASED,
    )


class TestUnresolvedQueue:
    """Tests for retrying the operator queue."""

    async def test_key_known_since(self, worker, processor):
        """Test that an item whose subscription now exists is closed."""
        item = unresolved_item()
        subscription_id = uuid4()

        with patch.object(
            worker, "_subscription_id_for_key", AsyncMock(return_value=subscription_id)
        ):
            assert await worker._retry_unresolved(item) is True

        processor.resolve_unresolved.assert_awaited_once_with(item.item_id, subscription_id)

    async def test_store_reports_no_entitlement(self, worker, processor, store_client):
        """Test that a lapsed store purchase keeps the item open."""
        item = unresolved_item()
        store_client.validate_subscription.return_value = store_state(StoreState.EXPIRED)

        with patch.object(worker, "_subscription_id_for_key", AsyncMock(return_value=None)):
            assert await worker._retry_unresolved(item) is False

        processor.resolve_unresolved.assert_awaited_once_with(
            item.item_id, None, resolved=False, reason="store reports expired"
        )

    async def test_purchase_applied(self, worker, processor, store_client):
        """Test that a now-resolvable purchase is applied and the item closed."""
        item = unresolved_item()
        store_client.validate_subscription.return_value = store_state(
            StoreState.ACTIVE, account_token=str(uuid4())
        )
        application = applied()
        processor.apply_store_event.return_value = application

        with patch.object(worker, "_subscription_id_for_key", AsyncMock(return_value=None)):
            assert await worker._retry_unresolved(item) is True

        event = processor.apply_store_event.await_args.args[0]
        assert event.kind == EventKind.PURCHASED
        processor.resolve_unresolved.assert_awaited_once_with(
            item.item_id, application.subscription.subscription_id
        )

    async def test_still_unlinked(self, worker, processor, store_client):
        """Test that a purchase that still cannot be linked counts an attempt."""
        item = unresolved_item()
        store_client.validate_subscription.return_value = store_state(StoreState.ACTIVE)
        processor.apply_store_event.side_effect = UserNotFoundError("unlinked purchase")

        with patch.object(worker, "_subscription_id_for_key", AsyncMock(return_value=None)):
            assert await worker._retry_unresolved(item) is False

        assert processor.resolve_unresolved.await_args.kwargs["resolved"] is False
