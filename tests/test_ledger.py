"""
Tests for the subscription state machine.
"""

from datetime import timedelta

import pytest

from subledger.exceptions import InvalidTransitionError
from subledger.models.api import EventKind, EventSource, Store, SubscriptionStatus
from subledger.services.ledger import (
    ENTITLED_STATUSES,
    TERMINAL_STATUSES,
    LedgerState,
    apply_event,
    effective_end,
    expiry_event,
    initial_state,
    is_due_for_expiry,
    next_status,
)
from factories import NOW, make_event

S = SubscriptionStatus


def ledger_state(
    status: SubscriptionStatus = S.ACTIVE,
    period_end_days: float = 10,
    store: Store = Store.MOBILE,
    **overrides,
) -> LedgerState:
    fields = {
        "store": store,
        "status": status,
        "current_period_end": NOW + timedelta(days=period_end_days),
        "auto_renewing": True,
    }
    fields.update(overrides)
    return LedgerState(**fields)


class TestTransitionTable:
    """Tests for next_status lookups."""

    @pytest.mark.parametrize(
        "current",
        [S.TRIAL, S.ACTIVE, S.GRACE, S.PENDING_CANCELLATION, S.PAUSED, S.EXPIRED],
    )
    def test_renewed_reactivates(self, current):
        """Test that a renewal lands in active from every renewable status."""
        assert next_status(current, make_event(EventKind.RENEWED)) == S.ACTIVE

    @pytest.mark.parametrize("current", [S.CANCELED, S.REFUNDED])
    def test_renewed_rejected_from_ended_subscription(self, current):
        """Test that canceled and refunded subscriptions cannot renew."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            next_status(current, make_event(EventKind.RENEWED))

        assert exc_info.value.current == current
        assert exc_info.value.kind == EventKind.RENEWED

    @pytest.mark.parametrize("current", list(SubscriptionStatus))
    def test_purchased_allowed_from_any_status(self, current):
        """Test that a verified purchase may reopen any record."""
        assert next_status(current, make_event(EventKind.PURCHASED)) == S.ACTIVE

    def test_trial_purchase_after_expiry_starts_trial(self):
        """Test that a trial purchase on an expired record lands in trial."""
        event = make_event(EventKind.PURCHASED, is_trial=True)

        assert next_status(S.EXPIRED, event) == S.TRIAL

    def test_trial_purchase_on_active_stays_active(self):
        """Test that a trial flag does not downgrade an active subscription."""
        event = make_event(EventKind.PURCHASED, is_trial=True)

        assert next_status(S.ACTIVE, event) == S.ACTIVE

    def test_cancel_at_period_end(self):
        """Test that a plain cancellation keeps entitlement until period end."""
        assert next_status(S.ACTIVE, make_event(EventKind.CANCELED)) == S.PENDING_CANCELLATION

    @pytest.mark.parametrize("current", [S.TRIAL, S.ACTIVE, S.GRACE, S.PAUSED])
    def test_immediate_cancel_ends_live_subscription(self, current):
        """Test that immediate cancellation goes straight to canceled."""
        event = make_event(EventKind.CANCELED, immediate=True)

        assert next_status(current, event) == S.CANCELED

    def test_immediate_cancel_rejected_when_terminal(self):
        """Test that an expired subscription cannot be canceled."""
        with pytest.raises(InvalidTransitionError):
            next_status(S.EXPIRED, make_event(EventKind.CANCELED, immediate=True))

    @pytest.mark.parametrize("current", [S.ACTIVE, S.GRACE, S.EXPIRED, S.REFUNDED])
    def test_revoked_refunds(self, current):
        """Test that revocation is accepted from live, expired and refunded records."""
        assert next_status(current, make_event(EventKind.REVOKED)) == S.REFUNDED

    def test_revoked_rejected_after_user_cancel(self):
        """Test that revocation is not applied to a canceled record."""
        with pytest.raises(InvalidTransitionError):
            next_status(S.CANCELED, make_event(EventKind.REVOKED))

    @pytest.mark.parametrize("kind", [EventKind.PAUSED, EventKind.RESTARTED])
    @pytest.mark.parametrize("store", [Store.APPSTORE, Store.WEB])
    def test_mobile_only_kinds_rejected_elsewhere(self, kind, store):
        """Test that pause and restart are Google Play concepts only."""
        with pytest.raises(InvalidTransitionError):
            next_status(S.ACTIVE, make_event(kind, store=store))

    def test_paused_on_mobile(self):
        """Test that Google Play can pause an active subscription."""
        assert next_status(S.ACTIVE, make_event(EventKind.PAUSED)) == S.PAUSED

    def test_expired_is_idempotent(self):
        """Test that a repeated expiry is accepted."""
        assert next_status(S.EXPIRED, make_event(EventKind.EXPIRED)) == S.EXPIRED

    @pytest.mark.parametrize(
        "kind, current, target",
        [
            (EventKind.CANCELED, S.PENDING_CANCELLATION, S.PENDING_CANCELLATION),
            (EventKind.CANCELED, S.PAUSED, S.PENDING_CANCELLATION),
            (EventKind.RECOVERED, S.ACTIVE, S.ACTIVE),
            (EventKind.RECOVERED, S.EXPIRED, S.ACTIVE),
            (EventKind.GRACE_PERIOD_ENTERED, S.TRIAL, S.GRACE),
            (EventKind.GRACE_PERIOD_ENTERED, S.GRACE, S.GRACE),
            (EventKind.RENEWAL_RESTORED, S.GRACE, S.GRACE),
            (EventKind.PAUSED, S.PAUSED, S.PAUSED),
            (EventKind.RESTARTED, S.ACTIVE, S.ACTIVE),
        ],
    )
    def test_redelivery_tolerant_transitions(self, kind, current, target):
        """Test the transitions that absorb redelivered and reordered notifications."""
        assert next_status(current, make_event(kind)) == target

    @pytest.mark.parametrize(
        "kind, current",
        [
            (EventKind.CANCELED, S.CANCELED),
            (EventKind.RECOVERED, S.PENDING_CANCELLATION),
            (EventKind.RECOVERED, S.REFUNDED),
            (EventKind.GRACE_PERIOD_ENTERED, S.PAUSED),
            (EventKind.RENEWAL_RESTORED, S.EXPIRED),
        ],
    )
    def test_transitions_outside_the_table(self, kind, current):
        """Test that events outside the transition table are rejected."""
        with pytest.raises(InvalidTransitionError):
            next_status(current, make_event(kind))

    def test_status_sets_are_disjoint(self):
        """Test that no status is both entitled and terminal."""
        assert not ENTITLED_STATUSES & TERMINAL_STATUSES


class TestApplyEvent:
    """Tests for apply_event."""

    def test_renewal_advances_period_in_place(self):
        """Test that a renewal extends the period and records validation time."""
        state = ledger_state()
        event = make_event(EventKind.RENEWED, period_end=NOW + timedelta(days=40))

        decision = apply_event(state, event, NOW)

        assert decision.applied is True
        assert decision.state.status == S.ACTIVE
        assert decision.state.current_period_end == NOW + timedelta(days=40)
        assert decision.state.last_validated_at == NOW
        assert decision.state.last_event_at == NOW
        assert decision.period_end_changed is True
        assert decision.status_changed is False

    def test_period_end_never_moves_backwards(self):
        """Test that an older period end in a later event is ignored."""
        state = ledger_state(period_end_days=30)
        event = make_event(EventKind.RENEWED, period_end=NOW + timedelta(days=5))

        decision = apply_event(state, event, NOW)

        assert decision.state.current_period_end == NOW + timedelta(days=30)

    def test_stale_store_event_is_not_applied(self):
        """Test that a store event older than the last validation is reported stale."""
        state = ledger_state(last_validated_at=NOW)
        event = make_event(EventKind.CANCELED, event_time=NOW - timedelta(hours=1))

        decision = apply_event(state, event, NOW)

        assert decision.applied is False
        assert decision.stale is True
        assert decision.state == state

    def test_api_event_is_never_stale(self):
        """Test that user actions are not compared against store time."""
        state = ledger_state(last_validated_at=NOW)
        event = make_event(
            EventKind.CANCELED,
            event_time=NOW - timedelta(hours=1),
            source=EventSource.API,
        )

        decision = apply_event(state, event, NOW)

        assert decision.applied is True
        assert decision.state.status == S.PENDING_CANCELLATION
        assert decision.state.last_validated_at == NOW

    def test_cancel_sets_canceled_at_and_stops_renewal(self):
        """Test that cancellation stamps the time and turns auto-renew off."""
        decision = apply_event(ledger_state(), make_event(EventKind.CANCELED), NOW)

        assert decision.state.status == S.PENDING_CANCELLATION
        assert decision.state.canceled_at == NOW
        assert decision.state.auto_renewing is False
        assert decision.state.current_period_end == NOW + timedelta(days=10)

    def test_immediate_cancel_truncates_period(self):
        """Test that immediate cancellation ends the period at the event time."""
        event = make_event(EventKind.CANCELED, immediate=True, source=EventSource.API)

        decision = apply_event(ledger_state(), event, NOW)

        assert decision.state.status == S.CANCELED
        assert decision.state.current_period_end == NOW
        assert decision.state.auto_renewing is False

    def test_revocation_truncates_period(self):
        """Test that a refund ends entitlement at the revocation time."""
        event = make_event(EventKind.REVOKED, event_time=NOW - timedelta(hours=2))

        decision = apply_event(ledger_state(), event, NOW)

        assert decision.state.status == S.REFUNDED
        assert decision.state.current_period_end == NOW - timedelta(hours=2)
        assert decision.state.is_entitled(NOW) is False

    def test_restore_clears_cancellation(self):
        """Test that re-enabling renewal returns to active and clears canceled_at."""
        state = ledger_state(
            status=S.PENDING_CANCELLATION,
            auto_renewing=False,
            canceled_at=NOW - timedelta(days=1),
        )

        decision = apply_event(state, make_event(EventKind.RENEWAL_RESTORED), NOW)

        assert decision.state.status == S.ACTIVE
        assert decision.state.canceled_at is None
        assert decision.state.auto_renewing is True

    def test_grace_uses_default_window(self):
        """Test that grace without a store end gets the default window."""
        state = ledger_state(period_end_days=-1)
        event = make_event(EventKind.GRACE_PERIOD_ENTERED)

        decision = apply_event(state, event, NOW, default_grace=timedelta(days=16))

        assert decision.state.status == S.GRACE
        assert decision.state.grace_period_end == NOW + timedelta(days=16)
        assert decision.state.effective_end == NOW + timedelta(days=16)
        assert decision.state.is_entitled(NOW) is True

    def test_grace_uses_store_window(self):
        """Test that a store-reported grace end wins over the default."""
        state = ledger_state(period_end_days=-1)
        event = make_event(
            EventKind.GRACE_PERIOD_ENTERED, grace_period_end=NOW + timedelta(days=3)
        )

        decision = apply_event(state, event, NOW)

        assert decision.state.grace_period_end == NOW + timedelta(days=3)

    def test_recovery_clears_grace(self):
        """Test that leaving grace drops the grace end."""
        state = ledger_state(
            status=S.GRACE,
            period_end_days=-1,
            grace_period_end=NOW + timedelta(days=5),
        )
        event = make_event(EventKind.RECOVERED, period_end=NOW + timedelta(days=30))

        decision = apply_event(state, event, NOW)

        assert decision.state.status == S.ACTIVE
        assert decision.state.grace_period_end is None

    def test_entitled_status_with_past_end_becomes_expired(self):
        """Test that an event never leaves an entitled status behind a passed end."""
        state = ledger_state(period_end_days=-1)

        decision = apply_event(state, make_event(EventKind.RENEWAL_EXTENDED), NOW)

        assert decision.state.status == S.EXPIRED
        assert decision.state.auto_renewing is False

    def test_invalid_transition_raises(self):
        """Test that disallowed events surface as InvalidTransitionError."""
        state = ledger_state(status=S.REFUNDED)

        with pytest.raises(InvalidTransitionError):
            apply_event(state, make_event(EventKind.RENEWED), NOW)

    def test_trial_purchase_sets_trial_end(self):
        """Test that a trial purchase records its trial end."""
        state = ledger_state(status=S.EXPIRED, period_end_days=-5)
        event = make_event(
            EventKind.PURCHASED, is_trial=True, period_end=NOW + timedelta(days=7)
        )

        decision = apply_event(state, event, NOW)

        assert decision.state.status == S.TRIAL
        assert decision.state.trial_end_date == NOW + timedelta(days=7)


class TestHelpers:
    """Tests for ledger helper functions."""

    def test_effective_end_in_grace(self):
        """Test that the grace end extends entitlement only while in grace."""
        end = NOW
        grace = NOW + timedelta(days=3)

        assert effective_end(S.GRACE, end, grace) == grace
        assert effective_end(S.ACTIVE, end, grace) == end
        assert effective_end(S.GRACE, end, None) == end

    def test_initial_state_for_trial(self):
        """Test the snapshot of a newly purchased trial."""
        event = make_event(EventKind.PURCHASED, is_trial=True, auto_renewing=False)

        state = initial_state(event, NOW + timedelta(days=7))

        assert state.status == S.TRIAL
        assert state.trial_end_date == NOW + timedelta(days=7)
        assert state.auto_renewing is False
        assert state.last_validated_at == NOW

    def test_initial_state_from_api_has_no_validation_time(self):
        """Test that only store events mark a subscription as validated."""
        event = make_event(EventKind.PURCHASED, source=EventSource.API)

        state = initial_state(event, NOW + timedelta(days=30))

        assert state.status == S.ACTIVE
        assert state.auto_renewing is True
        assert state.last_validated_at is None

    def test_is_due_for_expiry(self):
        """Test expiry detection for entitled and terminal statuses."""
        assert is_due_for_expiry(ledger_state(period_end_days=-1), NOW) is True
        assert is_due_for_expiry(ledger_state(period_end_days=1), NOW) is False
        assert is_due_for_expiry(ledger_state(status=S.EXPIRED, period_end_days=-1), NOW) is False

    def test_grace_not_due_before_grace_end(self):
        """Test that grace keeps a passed period alive."""
        state = ledger_state(
            status=S.GRACE, period_end_days=-1, grace_period_end=NOW + timedelta(days=1)
        )

        assert is_due_for_expiry(state, NOW) is False

    def test_expiry_event(self):
        """Test the internal expiry event built by the sweep."""
        event = expiry_event(ledger_state(store=Store.WEB), "web-key", NOW)

        assert event.kind == EventKind.EXPIRED
        assert event.store == Store.WEB
        assert event.source == EventSource.SWEEP
        assert event.reason == "period_elapsed"
        assert event.is_store_sourced is False
