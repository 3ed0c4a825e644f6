"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


# ============================================================================
# Enumerations
# ============================================================================


class Store(str, Enum):
    """Originating billing platform of a subscription."""

    MOBILE = "mobile"  # Google Play
    APPSTORE = "appstore"  # Apple App Store
    WEB = "web"  # First-party web payments (Stripe)


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle state."""

    TRIAL = "trial"
    ACTIVE = "active"
    GRACE = "grace"
    PENDING_CANCELLATION = "pending_cancellation"
    CANCELED = "canceled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    PAUSED = "paused"


class EventKind(str, Enum):
    """Canonical event kinds every store notification is mapped onto."""

    PURCHASED = "purchased"
    RENEWED = "renewed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    GRACE_PERIOD_ENTERED = "grace_period_entered"
    RECOVERED = "recovered"
    REVOKED = "revoked"
    PAUSED = "paused"
    RESTARTED = "restarted"
    RENEWAL_RESTORED = "renewal_restored"
    RENEWAL_EXTENDED = "renewal_extended"
    RECONCILED = "reconciled"


class EventSource(str, Enum):
    """Where an applied event originated."""

    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"
    SWEEP = "sweep"
    API = "api"
    SYSTEM = "system"


class TransactionType(str, Enum):
    """Payment record transaction type."""

    CHARGE = "charge"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    CHARGEBACK = "chargeback"
    REVERSAL = "reversal"
    PRORATION = "proration"
    CREDIT = "credit"


class PaymentStatus(str, Enum):
    """Payment record status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"
    REVERSED = "reversed"


class BillingPeriod(str, Enum):
    """Catalog billing period."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class UnresolvedStatus(str, Enum):
    """Operator queue item status."""

    OPEN = "open"
    RESOLVED = "resolved"


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Response to every store webhook delivery."""

    status: Literal["success", "duplicate", "ignored", "queued"]
    event_id: str | None = None


class AppStoreNotificationRequest(BaseModel):
    """App Store Server Notification V2 request body."""

    signedPayload: str = Field(..., min_length=1)


# ============================================================================
# Subscription Models
# ============================================================================


class SubscriptionResponse(BaseModel):
    """Single subscription."""

    subscription_id: UUID
    user_id: UUID
    store: Store
    product_id: str
    store_product_id: str | None
    status: SubscriptionStatus
    auto_renewing: bool
    start_date: str  # ISO 8601 timestamp
    current_period_end: str
    trial_end_date: str | None = None
    grace_period_end: str | None = None
    canceled_at: str | None = None
    price_minor: int
    currency: str
    last_validated_at: str | None = None


class SubscriptionListResponse(BaseModel):
    """GET /v1/subscriptions response."""

    subscriptions: list[SubscriptionResponse]
    total: int


class SubscriptionEventResponse(BaseModel):
    """Single audit event."""

    event_id: UUID
    event_kind: EventKind
    source: EventSource
    previous_status: SubscriptionStatus | None
    new_status: SubscriptionStatus | None
    applied: bool
    has_financial_impact: bool
    amount_minor: int | None = None
    currency: str | None = None
    notification_id: str | None = None
    processing_error: str | None = None
    event_time: str
    created_at: str


class SubscriptionEventListResponse(BaseModel):
    """GET /v1/subscriptions/{id}/events response."""

    events: list[SubscriptionEventResponse]
    total: int


class PaymentRecordResponse(BaseModel):
    """Single payment record."""

    payment_id: UUID
    subscription_id: UUID
    store: Store
    store_transaction_id: str
    transaction_type: TransactionType
    amount_minor: int
    currency: str
    status: PaymentStatus
    transaction_date: str


class PaymentRecordListResponse(BaseModel):
    """GET /v1/subscriptions/{id}/payments response."""

    payments: list[PaymentRecordResponse]
    total: int


class CancelSubscriptionRequest(BaseModel):
    """POST /v1/subscriptions/{id}/cancel request body."""

    immediate: bool = False
    reason: str | None = Field(None, max_length=255)


class LinkGooglePlayRequest(BaseModel):
    """POST /v1/subscriptions/google-play/link request body."""

    purchase_token: str = Field(..., min_length=10)
    subscription_id: str = Field(..., min_length=1, max_length=255)


class LinkAppStoreRequest(BaseModel):
    """POST /v1/subscriptions/app-store/link request body."""

    original_transaction_id: str = Field(..., min_length=1, max_length=255)
    product_id: str = Field(..., min_length=1, max_length=255)

    @field_validator("original_transaction_id")
    @classmethod
    def validate_transaction_id(cls, v: str) -> str:
        """App Store transaction ids are numeric strings."""
        if not v.isdigit():
            raise ValueError("original_transaction_id must be numeric")
        return v


class EntitlementResponse(BaseModel):
    """GET /v1/entitlement response."""

    user_id: UUID
    is_subscribed: bool
    subscription_status: SubscriptionStatus | None = None
    expires_at: str | None = None
    source: Store | None = None
    plan: str | None = None
    active_subscription_id: UUID | None = None


# ============================================================================
# Admin Models
# ============================================================================


class WorkerRunResponse(BaseModel):
    """Tally of one worker pass."""

    worker: str
    processed: int
    updated: int
    expired: int
    errors: int
    resolved: int = 0


class UnresolvedNotificationResponse(BaseModel):
    """Operator queue item."""

    item_id: UUID
    store: Store
    correlation_key: str
    store_product_id: str | None
    reason: str
    error_kind: str
    status: UnresolvedStatus
    attempts: int
    created_at: str


class UnresolvedNotificationListResponse(BaseModel):
    """GET /v1/admin/unresolved-notifications response."""

    items: list[UnresolvedNotificationResponse]
    total: int


class AuditTransitionResponse(BaseModel):
    """One reconstructed status transition."""

    event_id: UUID
    event_kind: EventKind
    previous_status: SubscriptionStatus | None
    new_status: SubscriptionStatus | None
    period_end_after: str | None
    event_time: str
    consistent: bool


class SubscriptionAuditResponse(BaseModel):
    """GET /v1/admin/subscriptions/{id}/audit response."""

    subscription_id: UUID
    current_status: SubscriptionStatus
    reconstructed_status: SubscriptionStatus | None
    consistent: bool
    transitions: list[AuditTransitionResponse]


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "degraded"]
    database: Literal["ok", "error"]
    workers: dict[str, bool]
