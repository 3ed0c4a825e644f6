"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
The raw store notification is the one JSONB column, kept verbatim for audit.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from subledger.models.api import (
    BillingPeriod,
    EventKind,
    EventSource,
    PaymentStatus,
    Store,
    SubscriptionStatus,
    TransactionType,
    UnresolvedStatus,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_column(enum_cls: type[Enum], name: str, length: int = 32) -> SQLEnum:
    """String-backed enum column storing the enum values."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class User(Base):
    """
    ORM model for the users table (owned by the user service).

    Only the primary key and the entitlement projection columns are mapped;
    this service never writes any other user field.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Entitlement projection (derived from subscriptions)
    is_subscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    subscription_status: Mapped[SubscriptionStatus | None] = mapped_column(
        _enum_column(SubscriptionStatus, "user_subscription_status"), nullable=True
    )
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    subscription_source: Mapped[Store | None] = mapped_column(
        _enum_column(Store, "user_subscription_source", 16), nullable=True
    )
    subscription_plan: Mapped[str | None] = mapped_column(String(255), nullable=True)
    active_subscription_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), nullable=True
    )
    last_payment_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    entitlement_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<User(id={self.id}, is_subscribed={self.is_subscribed}, "
            f"expires_at={self.subscription_expires_at})>"
        )


class Product(Base):
    """
    ORM model for the products table (catalog, read-only here).

    Maps a catalog product to its billing period, price and store product ids.
    """

    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_period: Mapped[BillingPeriod] = mapped_column(
        _enum_column(BillingPeriod, "billing_period", 16), nullable=False
    )
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    google_play_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    app_store_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    trial_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("price_minor >= 0", name="ck_products_price_non_negative"),
        Index("idx_products_google_play_product_id", "google_play_product_id"),
        Index("idx_products_app_store_product_id", "app_store_product_id"),
        Index("idx_products_stripe_price_id", "stripe_price_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Product(product_id={self.product_id}, period={self.billing_period})>"


class Subscription(Base):
    """
    ORM model for subscriptions table.

    One purchased entitlement instance. Mutated only by the transaction
    processor; renewals advance the row in place and never delete it.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    product_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("products.product_id"), nullable=False
    )
    store_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Store correlation - exactly one key per subscription, unique per store
    store: Mapped[Store] = mapped_column(_enum_column(Store, "store", 16), nullable=False)
    correlation_key: Mapped[str] = mapped_column(String(4096), nullable=False)
    original_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    linked_purchase_token: Mapped[str | None] = mapped_column(String(4096), nullable=True)
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="production")

    # Lifecycle
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "subscription_status"), nullable=False
    )
    auto_renewing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    trial_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Pricing
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Validation bookkeeping
    validation_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_validated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price_minor >= 0", name="ck_subscriptions_price_non_negative"),
        CheckConstraint(
            "validation_attempts >= 0", name="ck_subscriptions_validation_attempts_non_negative"
        ),
        UniqueConstraint("store", "correlation_key", name="uq_subscriptions_store_correlation"),
        Index("idx_subscriptions_user_id", "user_id"),
        Index("idx_subscriptions_status_period_end", "status", "current_period_end"),
        Index(
            "idx_subscriptions_original_transaction_id",
            "original_transaction_id",
            postgresql_where=text("original_transaction_id IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, store={self.store}, status={self.status}, "
            f"period_end={self.current_period_end})>"
        )


class PaymentRecord(Base):
    """
    ORM model for payment_records table.

    One financial movement. (store, store_transaction_id) is the idempotency
    key preventing double-charging on webhook redelivery.
    """

    __tablename__ = "payment_records"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
    )

    store: Mapped[Store] = mapped_column(_enum_column(Store, "payment_store", 16), nullable=False)
    store_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType, "payment_transaction_type", 20), nullable=False
    )
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)  # signed
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status", 20), nullable=False
    )
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    original_payment_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("payment_records.id"), nullable=True
    )

    # Export / reconciliation flags for reporting collaborators
    exported: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    export_batch_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "store", "store_transaction_id", name="uq_payment_records_store_transaction"
        ),
        CheckConstraint(
            "(transaction_type IN ('refund', 'partial_refund', 'chargeback', 'reversal') "
            "AND amount_minor <= 0) OR "
            "(transaction_type NOT IN ('refund', 'partial_refund', 'chargeback', 'reversal') "
            "AND amount_minor >= 0)",
            name="ck_payment_records_amount_sign",
        ),
        Index("idx_payment_records_user_id", "user_id"),
        Index("idx_payment_records_subscription_id", "subscription_id"),
        Index("idx_payment_records_exported", "exported", postgresql_where=text("NOT exported")),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentRecord(id={self.id}, store={self.store}, "
            f"txn={self.store_transaction_id}, amount={self.amount_minor})>"
        )


class SubscriptionEvent(Base):
    """
    ORM model for subscription_events table.

    Append-only audit trail of every applied, stale or failed event plus
    system-level tallies. notification_id deduplicates webhook deliveries.
    """

    __tablename__ = "subscription_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    subscription_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=True,
    )
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    event_kind: Mapped[EventKind] = mapped_column(
        _enum_column(EventKind, "event_kind"), nullable=False
    )
    source: Mapped[EventSource] = mapped_column(
        _enum_column(EventSource, "event_source", 20), nullable=False
    )
    store: Mapped[Store | None] = mapped_column(_enum_column(Store, "event_store", 16), nullable=True)

    previous_status: Mapped[SubscriptionStatus | None] = mapped_column(
        _enum_column(SubscriptionStatus, "event_previous_status"), nullable=True
    )
    new_status: Mapped[SubscriptionStatus | None] = mapped_column(
        _enum_column(SubscriptionStatus, "event_new_status"), nullable=True
    )
    period_end_before: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    period_end_after: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Store notification
    notification_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notification_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    raw_notification: Mapped[dict[str, object]] = mapped_column(
        JSONB, nullable=False, default=dict
    )

    # Financial impact
    has_financial_impact: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    amount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payment_record_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("payment_records.id"), nullable=True
    )

    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index(
            "uq_subscription_events_notification_id",
            "notification_id",
            unique=True,
            postgresql_where=text("notification_id IS NOT NULL"),
        ),
        Index("idx_subscription_events_subscription_id", "subscription_id", "created_at"),
        Index("idx_subscription_events_kind_created", "event_kind", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<SubscriptionEvent(id={self.id}, kind={self.event_kind}, "
            f"{self.previous_status}->{self.new_status}, applied={self.applied})>"
        )


class UnresolvedNotification(Base):
    """
    ORM model for unresolved_notifications table.

    Operator queue for notifications that referenced an unknown subscription,
    product or user. The reconciliation worker retries them each pass.
    """

    __tablename__ = "unresolved_notifications"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    store: Mapped[Store] = mapped_column(
        _enum_column(Store, "unresolved_store", 16), nullable=False
    )
    correlation_key: Mapped[str] = mapped_column(String(4096), nullable=False)
    store_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notification_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_kind: Mapped[EventKind] = mapped_column(
        _enum_column(EventKind, "unresolved_event_kind"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    error_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    raw_notification: Mapped[dict[str, object]] = mapped_column(
        JSONB, nullable=False, default=dict
    )

    status: Mapped[UnresolvedStatus] = mapped_column(
        _enum_column(UnresolvedStatus, "unresolved_status", 16), nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_subscription_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index(
            "idx_unresolved_notifications_open",
            "created_at",
            postgresql_where=text("status = 'open'"),
        ),
        Index("idx_unresolved_notifications_correlation", "store", "correlation_key"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UnresolvedNotification(id={self.id}, store={self.store}, "
            f"status={self.status}, attempts={self.attempts})>"
        )
