"""
Hypothesis Property-Based Tests for the ledger and models.

Uses Hypothesis to generate random event sequences and inputs and verify:
- State machine invariants (entitlement never outlives its end)
- Period end monotonicity
- Billing period arithmetic
- Domain model validation
"""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from subledger.exceptions import InvalidTransitionError
from subledger.models.api import BillingPeriod, EventKind, EventSource, Store, SubscriptionStatus
from subledger.models.domain import NormalizedEvent
from subledger.models.stripe import StripeWebhookEvent
from subledger.services.ledger import (
    ENTITLED_STATUSES,
    LedgerState,
    apply_event,
)
from subledger.services.product_catalog import add_billing_period, add_months
from subledger.services.retry import RetryPolicy

# ============================================================================
# Hypothesis Strategies - Reusable data generators
# ============================================================================

BASE = datetime(2026, 1, 1, tzinfo=UTC)

lifecycle_kinds = st.sampled_from([k for k in EventKind if k != EventKind.RECONCILED])

stores = st.sampled_from(list(Store))

sources = st.sampled_from(
    [EventSource.WEBHOOK, EventSource.RECONCILIATION, EventSource.API, EventSource.SWEEP]
)

offsets = st.integers(min_value=-60 * 24 * 60, max_value=60 * 24 * 60).map(
    lambda minutes: timedelta(minutes=minutes)
)


@st.composite
def events(draw, store: Store) -> NormalizedEvent:
    """Random lifecycle event for one store."""
    return NormalizedEvent(
        kind=draw(lifecycle_kinds),
        store=store,
        correlation_key="purchase-token-0001",
        event_time=BASE + draw(offsets),
        source=draw(sources),
        period_end=draw(st.none() | offsets.map(lambda d: BASE + d)),
        grace_period_end=draw(st.none() | offsets.map(lambda d: BASE + d)),
        auto_renewing=draw(st.none() | st.booleans()),
        is_trial=draw(st.booleans()),
        immediate=draw(st.booleans()),
    )


@st.composite
def event_sequences(draw):
    store = draw(stores)
    return store, draw(st.lists(events(store), min_size=1, max_size=12))


# ============================================================================
# State machine properties
# ============================================================================


class TestLedgerProperties:
    """Property tests for apply_event."""

    @given(sequence=event_sequences(), now_offset=offsets)
    @settings(max_examples=200, suppress_health_check=[HealthCheck.too_slow])
    def test_entitled_status_always_has_future_end(self, sequence, now_offset):
        """Property: after any applied event, an entitled status ends after now."""
        store, batch = sequence
        now = BASE + now_offset
        state = LedgerState(
            store=store,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=now + timedelta(days=30),
            auto_renewing=True,
        )

        for event in batch:
            try:
                decision = apply_event(state, event, now)
            except InvalidTransitionError:
                continue
            state = decision.state
            if state.status in ENTITLED_STATUSES:
                assert state.effective_end > now

    @given(sequence=event_sequences())
    @settings(max_examples=200)
    def test_period_end_only_moves_back_on_truncation(self, sequence):
        """Property: only revocation and immediate cancel shorten the period."""
        store, batch = sequence
        state = LedgerState(
            store=store,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=BASE + timedelta(days=30),
            auto_renewing=True,
        )

        for event in batch:
            try:
                decision = apply_event(state, event, BASE - timedelta(days=90))
            except InvalidTransitionError:
                continue
            truncating = event.kind == EventKind.REVOKED or (
                event.kind == EventKind.CANCELED and event.immediate
            )
            if not truncating:
                assert decision.state.current_period_end >= state.current_period_end
            state = decision.state

    @given(sequence=event_sequences())
    @settings(max_examples=100)
    def test_validation_time_never_decreases(self, sequence):
        """Property: last_validated_at is monotonic."""
        store, batch = sequence
        state = LedgerState(
            store=store,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=BASE + timedelta(days=30),
            auto_renewing=True,
        )

        for event in batch:
            try:
                decision = apply_event(state, event, BASE - timedelta(days=90))
            except InvalidTransitionError:
                continue
            if state.last_validated_at is not None:
                assert decision.state.last_validated_at >= state.last_validated_at
            state = decision.state


# ============================================================================
# Calendar and policy properties
# ============================================================================


class TestCalendarProperties:
    """Property tests for billing period arithmetic."""

    @given(
        start=st.datetimes(
            min_value=datetime(2000, 1, 1), max_value=datetime(2090, 12, 31), timezones=st.just(UTC)
        ),
        months=st.integers(min_value=0, max_value=48),
    )
    def test_add_months(self, start, months):
        """Property: month arithmetic lands in the right month and never grows the day."""
        result = add_months(start, months)

        assert (result.year * 12 + result.month) - (start.year * 12 + start.month) == months
        assert result.day <= start.day
        assert result.time() == start.time()

    @given(
        start=st.datetimes(
            min_value=datetime(2000, 1, 1), max_value=datetime(2090, 12, 31), timezones=st.just(UTC)
        ),
        period=st.sampled_from(list(BillingPeriod)),
    )
    def test_billing_period_moves_forward(self, start, period):
        """Property: every billing period ends after it starts."""
        assert add_billing_period(start, period) > start

    @given(
        base=st.floats(min_value=0.01, max_value=5),
        cap=st.floats(min_value=0.01, max_value=60),
        attempt=st.integers(min_value=1, max_value=30),
    )
    def test_backoff_is_capped_and_monotonic(self, base, cap, attempt):
        """Property: backoff never exceeds the cap and never shrinks."""
        policy = RetryPolicy(backoff_base_seconds=base, backoff_max_seconds=cap)

        assert policy.delay_for(attempt) <= cap
        assert policy.delay_for(attempt + 1) >= policy.delay_for(attempt)


# ============================================================================
# Model validation properties
# ============================================================================


class TestModelValidation:
    """Property tests for dataclass validation."""

    @given(amount=st.integers(max_value=-1))
    def test_stripe_event_rejects_negative_amount(self, amount):
        """Property: Stripe amounts are never negative."""
        with pytest.raises(ValueError):
            StripeWebhookEvent(
                event_id="evt_1",
                event_type="payment_intent.succeeded",
                created=BASE,
                object_id="pi_1",
                amount_minor=amount,
                currency="USD",
            )

    @given(currency=st.text(max_size=6).filter(lambda c: len(c) != 3))
    def test_event_rejects_bad_currency(self, currency):
        """Property: currency codes are three characters."""
        with pytest.raises(ValueError):
            NormalizedEvent(
                kind=EventKind.RENEWED,
                store=Store.MOBILE,
                correlation_key="purchase-token-0001",
                event_time=BASE,
                currency=currency,
            )

    @given(amount=st.integers(min_value=0, max_value=10**12))
    def test_event_accepts_non_negative_amount(self, amount):
        """Property: any non-negative amount is accepted."""
        event = NormalizedEvent(
            kind=EventKind.RENEWED,
            store=Store.WEB,
            correlation_key="web-ref",
            event_time=BASE,
            transaction_id="pi_1",
            amount_minor=amount,
            currency="USD",
        )

        assert event.has_financial_impact is True
