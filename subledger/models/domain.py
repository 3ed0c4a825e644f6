"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
The only free-form mapping is the raw store payload kept for the audit trail.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

from subledger.models.api import (
    BillingPeriod,
    EventKind,
    EventSource,
    PaymentStatus,
    Store,
    SubscriptionStatus,
    TransactionType,
)

# Event kinds that move money when they carry a store transaction id and amount
FINANCIAL_EVENT_KINDS = frozenset(
    {EventKind.PURCHASED, EventKind.RENEWED, EventKind.RECOVERED, EventKind.REVOKED}
)


def _require_aware(value: datetime | None, name: str) -> None:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


@dataclass(frozen=True)
class NormalizedEvent:
    """Store-independent lifecycle event produced by a normalizer adapter.

    Every store notification, reconciliation finding and sweep decision is
    expressed as one of these before it reaches the transaction processor.
    """

    kind: EventKind
    store: Store
    correlation_key: str  # purchase token / original transaction id / gateway ref
    event_time: datetime  # store-reported time of the event
    source: EventSource = EventSource.WEBHOOK

    notification_id: str | None = None  # store-issued id used for deduplication
    notification_type: str | None = None  # raw store type, e.g. "DID_RENEW" or "2"
    store_product_id: str | None = None
    transaction_id: str | None = None  # store transaction id of the money movement
    original_transaction_id: str | None = None
    period_end: datetime | None = None
    grace_period_end: datetime | None = None
    auto_renewing: bool | None = None
    amount_minor: int | None = None  # absolute amount; refunds are negated on insert
    currency: str | None = None
    is_trial: bool = False
    immediate: bool = False  # Canceled: terminate now instead of at period end
    account_token: str | None = None  # user link set by the client at purchase time
    environment: str | None = None
    reason: str | None = None
    raw_fields: dict[str, object] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        """Validate event fields."""
        if not self.correlation_key:
            raise ValueError("correlation_key cannot be empty")
        _require_aware(self.event_time, "event_time")
        _require_aware(self.period_end, "period_end")
        _require_aware(self.grace_period_end, "grace_period_end")
        if self.amount_minor is not None and self.amount_minor < 0:
            raise ValueError(f"amount_minor must not be negative: {self.amount_minor}")
        if self.currency is not None and len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")
        if self.kind == EventKind.RECONCILED:
            raise ValueError("Reconciled is a system event, not a lifecycle event")

    @property
    def has_financial_impact(self) -> bool:
        """True when applying this event must write a PaymentRecord."""
        return (
            self.kind in FINANCIAL_EVENT_KINDS
            and self.transaction_id is not None
            and self.amount_minor is not None
            and self.currency is not None
        )

    @property
    def is_store_sourced(self) -> bool:
        """Webhook and reconciliation events carry store-authoritative time."""
        return self.source in (EventSource.WEBHOOK, EventSource.RECONCILIATION)


@dataclass(frozen=True)
class PaymentEvent:
    """A verified payment to apply: creates or advances a subscription."""

    user_id: UUID
    product_id: str
    store: Store
    amount_minor: int
    currency: str
    correlation_key: str
    store_transaction_id: str
    event_time: datetime
    period_end: datetime | None = None  # None: derived from the product billing period
    source: EventSource = EventSource.WEBHOOK
    is_trial: bool = False
    auto_renewing: bool = True
    store_product_id: str | None = None
    original_transaction_id: str | None = None
    environment: str | None = None
    notification_id: str | None = None
    notification_type: str | None = None
    raw_fields: dict[str, object] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        """Validate payment constraints."""
        if self.amount_minor < 0:
            raise ValueError(f"Payment amount must not be negative: {self.amount_minor}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")
        if not self.correlation_key:
            raise ValueError("correlation_key cannot be empty")
        if not self.store_transaction_id:
            raise ValueError("store_transaction_id cannot be empty")
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        _require_aware(self.event_time, "event_time")
        _require_aware(self.period_end, "period_end")

    @classmethod
    def from_event(cls, event: NormalizedEvent, user_id: UUID, product_id: str) -> "PaymentEvent":
        """Build the payment application of a store Purchased/Renewed event."""
        if event.transaction_id is None or event.amount_minor is None or event.currency is None:
            raise ValueError("Event carries no payment")
        return cls(
            user_id=user_id,
            product_id=product_id,
            store=event.store,
            amount_minor=event.amount_minor,
            currency=event.currency,
            correlation_key=event.correlation_key,
            store_transaction_id=event.transaction_id,
            event_time=event.event_time,
            period_end=event.period_end,
            source=event.source,
            is_trial=event.is_trial,
            auto_renewing=event.auto_renewing if event.auto_renewing is not None else True,
            store_product_id=event.store_product_id,
            original_transaction_id=event.original_transaction_id,
            environment=event.environment,
            notification_id=event.notification_id,
            notification_type=event.notification_type,
            raw_fields=event.raw_fields,
        )


class StoreState(str, Enum):
    """Authoritative status reported by a store validation call."""

    ACTIVE = "active"
    CANCELED_PENDING = "canceled_pending"  # auto-renew off, still entitled
    GRACE = "grace"
    ON_HOLD = "on_hold"  # payment failed, no entitlement
    PAUSED = "paused"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass(frozen=True)
class StoreSubscriptionState:
    """Result of `validate_subscription` against a store's live API."""

    store: Store
    correlation_key: str
    state: StoreState
    expires_at: datetime
    checked_at: datetime
    auto_renewing: bool
    store_product_id: str | None = None
    grace_period_end: datetime | None = None
    latest_transaction_id: str | None = None
    original_transaction_id: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    is_trial: bool = False
    account_token: str | None = None
    start_time: datetime | None = None
    environment: str | None = None
    needs_acknowledgement: bool = False

    def __post_init__(self) -> None:
        """Validate store state fields."""
        _require_aware(self.expires_at, "expires_at")
        _require_aware(self.checked_at, "checked_at")

    @property
    def grants_entitlement(self) -> bool:
        return self.state in (StoreState.ACTIVE, StoreState.CANCELED_PENDING, StoreState.GRACE)


@dataclass(frozen=True)
class ProductData:
    """Catalog product (read-only collaborator)."""

    product_id: str
    name: str
    billing_period: BillingPeriod
    price_minor: int
    currency: str
    google_play_product_id: str | None = None
    app_store_product_id: str | None = None
    stripe_price_id: str | None = None
    trial_period_days: int = 0
    grace_period_days: int = 0
    is_active: bool = True

    def __post_init__(self) -> None:
        """Validate catalog fields."""
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        if self.price_minor < 0:
            raise ValueError(f"Price cannot be negative: {self.price_minor}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")

    def store_product_id(self, store: Store) -> str | None:
        """Store-specific product identifier."""
        if store == Store.MOBILE:
            return self.google_play_product_id
        if store == Store.APPSTORE:
            return self.app_store_product_id
        return self.stripe_price_id


@dataclass(frozen=True)
class SubscriptionData:
    """Domain model for subscription (from database)."""

    subscription_id: UUID
    user_id: UUID
    store: Store
    product_id: str
    store_product_id: str | None
    correlation_key: str
    status: SubscriptionStatus
    auto_renewing: bool
    start_date: datetime
    current_period_end: datetime
    trial_end_date: datetime | None
    grace_period_end: datetime | None
    canceled_at: datetime | None
    price_minor: int
    currency: str
    validation_attempts: int
    last_validated_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class PaymentRecordData:
    """Domain model for payment record (from database)."""

    payment_id: UUID
    user_id: UUID
    subscription_id: UUID
    store: Store
    store_transaction_id: str
    transaction_type: TransactionType
    amount_minor: int
    currency: str
    status: PaymentStatus
    transaction_date: datetime
    created_at: datetime


@dataclass(frozen=True)
class SubscriptionEventData:
    """Domain model for an audit event (from database)."""

    event_id: UUID
    subscription_id: UUID | None
    event_kind: EventKind
    source: EventSource
    previous_status: SubscriptionStatus | None
    new_status: SubscriptionStatus | None
    period_end_before: datetime | None
    period_end_after: datetime | None
    applied: bool
    has_financial_impact: bool
    amount_minor: int | None
    currency: str | None
    notification_id: str | None
    processing_error: str | None
    event_time: datetime
    created_at: datetime


@dataclass(frozen=True)
class PaymentApplication:
    """Result of `apply_payment_event`."""

    subscription: SubscriptionData
    payment_record: PaymentRecordData
    already_applied: bool = False


@dataclass(frozen=True)
class LifecycleApplication:
    """Result of `apply_lifecycle_event`."""

    subscription: SubscriptionData
    applied: bool
    payment_record: PaymentRecordData | None = None
    previous_status: SubscriptionStatus | None = None


@dataclass(frozen=True)
class EntitlementProjection:
    """Derived entitlement of one user, written onto the user collaborator."""

    user_id: UUID
    is_subscribed: bool
    status: SubscriptionStatus | None = None
    expires_at: datetime | None = None
    source: Store | None = None
    plan: str | None = None
    active_subscription_id: UUID | None = None


@dataclass(frozen=True)
class WorkerResult:
    """Tally of one worker pass."""

    worker: str
    processed: int = 0
    updated: int = 0
    expired: int = 0
    errors: int = 0
    resolved: int = 0

    def __post_init__(self) -> None:
        """Validate counters."""
        for name in ("processed", "updated", "expired", "errors", "resolved"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
