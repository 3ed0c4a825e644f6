"""
Subscription Ledger - State machine and invariants for one subscription.

NO DICTIONARIES - All data uses strongly typed models.
NO I/O - Pure functions over immutable snapshots; the transaction processor
is the only caller that persists their results.

Every status change in the system is decided by `apply_event` using the
transition table below.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from subledger.exceptions import InvalidTransitionError
from subledger.models.api import EventKind, EventSource, Store, SubscriptionStatus
from subledger.models.domain import NormalizedEvent

S = SubscriptionStatus

# Statuses that grant entitlement while their effective end is in the future
ENTITLED_STATUSES = frozenset({S.TRIAL, S.ACTIVE, S.PENDING_CANCELLATION, S.GRACE})

TERMINAL_STATUSES = frozenset({S.CANCELED, S.EXPIRED, S.REFUNDED})

NON_TERMINAL_STATUSES = frozenset(set(SubscriptionStatus) - TERMINAL_STATUSES)

# Statuses the expiration sweep and reconciliation look at
RECONCILABLE_STATUSES = frozenset({S.ACTIVE, S.GRACE, S.PENDING_CANCELLATION})
SWEEPABLE_STATUSES = ENTITLED_STATUSES

# Mobile-store only event kinds
MOBILE_ONLY_KINDS = frozenset({EventKind.PAUSED, EventKind.RESTARTED})


def _to(target: SubscriptionStatus, *sources: SubscriptionStatus) -> dict[SubscriptionStatus, SubscriptionStatus]:
    return {source: target for source in sources}


# event kind -> {current status -> next status}
TRANSITIONS: dict[EventKind, dict[SubscriptionStatus, SubscriptionStatus]] = {
    # A verified purchase may reopen any record for the same store key
    # (resubscription keeps the original transaction id on the app store).
    EventKind.PURCHASED: _to(S.ACTIVE, *SubscriptionStatus),
    EventKind.RENEWED: _to(
        S.ACTIVE, S.TRIAL, S.ACTIVE, S.GRACE, S.PENDING_CANCELLATION, S.PAUSED, S.EXPIRED
    ),
    EventKind.CANCELED: _to(
        S.PENDING_CANCELLATION, S.TRIAL, S.ACTIVE, S.GRACE, S.PENDING_CANCELLATION, S.PAUSED
    ),
    EventKind.RENEWAL_RESTORED: {
        S.PENDING_CANCELLATION: S.ACTIVE,
        S.ACTIVE: S.ACTIVE,
        S.TRIAL: S.TRIAL,
        S.GRACE: S.GRACE,
    },
    EventKind.GRACE_PERIOD_ENTERED: _to(
        S.GRACE, S.TRIAL, S.ACTIVE, S.PENDING_CANCELLATION, S.GRACE
    ),
    EventKind.RECOVERED: _to(S.ACTIVE, S.GRACE, S.PAUSED, S.EXPIRED, S.ACTIVE),
    EventKind.EXPIRED: _to(
        S.EXPIRED, S.TRIAL, S.ACTIVE, S.PENDING_CANCELLATION, S.GRACE, S.PAUSED, S.EXPIRED
    ),
    EventKind.REVOKED: _to(S.REFUNDED, *NON_TERMINAL_STATUSES, S.EXPIRED, S.REFUNDED),
    EventKind.PAUSED: _to(S.PAUSED, S.ACTIVE, S.PAUSED),
    EventKind.RESTARTED: _to(S.ACTIVE, S.PAUSED, S.PENDING_CANCELLATION, S.ACTIVE),
    EventKind.RENEWAL_EXTENDED: {
        S.TRIAL: S.TRIAL,
        S.ACTIVE: S.ACTIVE,
        S.GRACE: S.GRACE,
        S.PENDING_CANCELLATION: S.PENDING_CANCELLATION,
    },
}

# Immediate user-initiated cancellation ends any live subscription
IMMEDIATE_CANCEL_TRANSITIONS = _to(S.CANCELED, *NON_TERMINAL_STATUSES)


@dataclass(frozen=True)
class LedgerState:
    """Snapshot of the ledger-governed fields of one subscription."""

    store: Store
    status: SubscriptionStatus
    current_period_end: datetime
    auto_renewing: bool
    grace_period_end: datetime | None = None
    trial_end_date: datetime | None = None
    canceled_at: datetime | None = None
    last_validated_at: datetime | None = None
    last_event_at: datetime | None = None

    @property
    def effective_end(self) -> datetime:
        return effective_end(self.status, self.current_period_end, self.grace_period_end)

    def is_entitled(self, now: datetime) -> bool:
        return self.status in ENTITLED_STATUSES and self.effective_end > now


@dataclass(frozen=True)
class LedgerDecision:
    """Outcome of applying one event to a ledger snapshot."""

    previous: LedgerState
    state: LedgerState
    applied: bool
    stale: bool = False

    @property
    def status_changed(self) -> bool:
        return self.previous.status != self.state.status

    @property
    def period_end_changed(self) -> bool:
        return self.previous.current_period_end != self.state.current_period_end


def effective_end(
    status: SubscriptionStatus,
    current_period_end: datetime,
    grace_period_end: datetime | None,
) -> datetime:
    """End of entitlement: the grace window while in grace, else the period end."""
    if status == S.GRACE and grace_period_end is not None:
        return max(current_period_end, grace_period_end)
    return current_period_end


def next_status(
    current: SubscriptionStatus,
    event: NormalizedEvent,
) -> SubscriptionStatus:
    """
    Look up the target status for an event.

    Raises:
        InvalidTransitionError: Event is not allowed from the current status
    """
    if event.kind in MOBILE_ONLY_KINDS and event.store != Store.MOBILE:
        raise InvalidTransitionError(current, event.kind)

    if event.kind == EventKind.CANCELED and event.immediate:
        table = IMMEDIATE_CANCEL_TRANSITIONS
    else:
        table = TRANSITIONS.get(event.kind, {})

    target = table.get(current)
    if target is None:
        raise InvalidTransitionError(current, event.kind)

    if event.kind == EventKind.PURCHASED and event.is_trial and current in (S.TRIAL, S.EXPIRED, S.CANCELED):
        return S.TRIAL
    return target


def initial_state(
    event: NormalizedEvent,
    period_end: datetime,
) -> LedgerState:
    """Ledger snapshot of a subscription created by a Purchased event."""
    status = S.TRIAL if event.is_trial else S.ACTIVE
    return LedgerState(
        store=event.store,
        status=status,
        current_period_end=period_end,
        auto_renewing=event.auto_renewing if event.auto_renewing is not None else True,
        trial_end_date=period_end if event.is_trial else None,
        last_validated_at=event.event_time if event.is_store_sourced else None,
        last_event_at=event.event_time,
    )


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def is_stale(state: LedgerState, event: NormalizedEvent) -> bool:
    """A store event older than the last store-validated moment is not applied."""
    return (
        event.is_store_sourced
        and state.last_validated_at is not None
        and event.event_time < state.last_validated_at
    )


def apply_event(
    state: LedgerState,
    event: NormalizedEvent,
    now: datetime,
    default_grace: timedelta = timedelta(days=16),
) -> LedgerDecision:
    """
    Apply one normalized event to a ledger snapshot.

    Enforces:
    1. Tie-break: stale store events are reported, not applied
    2. The transition table
    3. Monotonic period end, except revocation and immediate cancellation
    4. No entitled status with an effective end in the past

    Raises:
        InvalidTransitionError: Event is not allowed from the current status
    """
    if is_stale(state, event):
        return LedgerDecision(previous=state, state=state, applied=False, stale=True)

    target = next_status(state.status, event)

    truncates = event.kind == EventKind.REVOKED or (
        event.kind == EventKind.CANCELED and event.immediate
    )
    if truncates:
        period_end = min(state.current_period_end, event.event_time)
    elif event.period_end is not None:
        period_end = max(state.current_period_end, event.period_end)
    else:
        period_end = state.current_period_end

    grace_period_end = state.grace_period_end
    if target == S.GRACE and event.kind == EventKind.GRACE_PERIOD_ENTERED:
        grace_period_end = event.grace_period_end or (
            max(period_end, event.event_time) + default_grace
        )
    elif target != S.GRACE:
        grace_period_end = None

    auto_renewing = state.auto_renewing
    if event.auto_renewing is not None:
        auto_renewing = event.auto_renewing
    elif event.kind == EventKind.CANCELED or target in TERMINAL_STATUSES:
        auto_renewing = False
    elif event.kind in (EventKind.RENEWAL_RESTORED, EventKind.RENEWED, EventKind.RESTARTED):
        auto_renewing = True

    trial_end_date = state.trial_end_date
    if target == S.TRIAL and event.kind == EventKind.PURCHASED:
        trial_end_date = period_end

    canceled_at = state.canceled_at
    if event.kind == EventKind.CANCELED:
        canceled_at = canceled_at or event.event_time
    elif target == S.ACTIVE:
        canceled_at = None

    # Never leave an entitled status behind an end that has already passed
    if target in ENTITLED_STATUSES and effective_end(target, period_end, grace_period_end) <= now:
        target = S.EXPIRED
        grace_period_end = None
        auto_renewing = False

    new_state = replace(
        state,
        status=target,
        current_period_end=period_end,
        auto_renewing=auto_renewing,
        grace_period_end=grace_period_end,
        trial_end_date=trial_end_date,
        canceled_at=canceled_at,
        last_validated_at=(
            _later(state.last_validated_at, event.event_time)
            if event.is_store_sourced
            else state.last_validated_at
        ),
        last_event_at=_later(state.last_event_at, event.event_time),
    )
    return LedgerDecision(previous=state, state=new_state, applied=True)


def is_due_for_expiry(state: LedgerState, now: datetime) -> bool:
    """Entitled status whose effective end has passed."""
    return state.status in SWEEPABLE_STATUSES and state.effective_end <= now


def expiry_event(
    state: LedgerState,
    correlation_key: str,
    now: datetime,
    source: EventSource = EventSource.SWEEP,
) -> NormalizedEvent:
    """Internal Expired event used by the sweep and web reconciliation."""
    return NormalizedEvent(
        kind=EventKind.EXPIRED,
        store=state.store,
        correlation_key=correlation_key,
        event_time=now,
        source=source,
        reason="period_elapsed",
    )
