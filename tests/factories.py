"""
Model factories shared by the test modules.

Builds ORM rows with every column set (column defaults only apply on
insert) and normalized events pinned to a fixed clock.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

from subledger.db.models import PaymentRecord, Product, Subscription, SubscriptionEvent, User
from subledger.models.api import (
    BillingPeriod,
    EventKind,
    EventSource,
    PaymentStatus,
    Store,
    SubscriptionStatus,
    TransactionType,
)
from subledger.models.domain import NormalizedEvent, ProductData

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def session_factory_for(session: AsyncMock) -> MagicMock:
    """A callable usable as `async with factory() as session`."""
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=session)
    context.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=context)


def create_user(user_id: UUID | None = None, is_subscribed: bool = False) -> User:
    """Create a user row with an empty entitlement projection."""
    return User(
        id=user_id or uuid4(),
        is_subscribed=is_subscribed,
        subscription_status=None,
        subscription_expires_at=None,
        subscription_source=None,
        subscription_plan=None,
        active_subscription_id=None,
        last_payment_at=None,
        entitlement_updated_at=None,
    )


def create_product(
    product_id: str = "pro_monthly",
    billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    price_minor: int = 999,
    trial_period_days: int = 0,
) -> Product:
    """Create a catalog product row."""
    return Product(
        product_id=product_id,
        name="Pro",
        billing_period=billing_period,
        price_minor=price_minor,
        currency="USD",
        google_play_product_id="pro.monthly",
        app_store_product_id="com.example.pro.monthly",
        stripe_price_id="price_123",
        trial_period_days=trial_period_days,
        grace_period_days=0,
        is_active=True,
        created_at=NOW,
    )


def product_data(**overrides: Any) -> ProductData:
    """Create a catalog product domain model."""
    fields: dict[str, Any] = {
        "product_id": "pro_monthly",
        "name": "Pro",
        "billing_period": BillingPeriod.MONTHLY,
        "price_minor": 999,
        "currency": "USD",
        "google_play_product_id": "pro.monthly",
        "app_store_product_id": "com.example.pro.monthly",
        "stripe_price_id": "price_123",
    }
    fields.update(overrides)
    return ProductData(**fields)


def create_subscription(
    user_id: UUID | None = None,
    store: Store = Store.MOBILE,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    current_period_end: datetime | None = None,
    correlation_key: str = "purchase-token-0001",
    grace_period_end: datetime | None = None,
    last_validated_at: datetime | None = None,
    updated_at: datetime | None = None,
    product_id: str = "pro_monthly",
    auto_renewing: bool = True,
) -> Subscription:
    """Create a subscription row with every column set."""
    return Subscription(
        id=uuid4(),
        user_id=user_id or uuid4(),
        product_id=product_id,
        store_product_id="pro.monthly",
        store=store,
        correlation_key=correlation_key,
        original_transaction_id=None,
        linked_purchase_token=None,
        environment="production",
        status=status,
        auto_renewing=auto_renewing,
        start_date=NOW - timedelta(days=30),
        current_period_end=current_period_end or NOW + timedelta(days=10),
        trial_end_date=None,
        grace_period_end=grace_period_end,
        canceled_at=None,
        cancellation_reason=None,
        price_minor=999,
        currency="USD",
        validation_attempts=0,
        last_validated_at=last_validated_at,
        last_event_at=None,
        created_at=NOW - timedelta(days=30),
        updated_at=updated_at or NOW - timedelta(days=1),
    )


def create_event_row(
    subscription_id: UUID | None,
    event_kind: EventKind,
    previous_status: SubscriptionStatus | None,
    new_status: SubscriptionStatus | None,
    created_at: datetime,
    applied: bool = True,
) -> SubscriptionEvent:
    """Create an audit log row."""
    return SubscriptionEvent(
        id=uuid4(),
        subscription_id=subscription_id,
        user_id=None,
        event_kind=event_kind,
        source=EventSource.WEBHOOK,
        store=Store.MOBILE,
        previous_status=previous_status,
        new_status=new_status,
        period_end_before=None,
        period_end_after=None,
        applied=applied,
        notification_id=None,
        notification_type=None,
        raw_notification={},
        has_financial_impact=False,
        amount_minor=None,
        currency=None,
        payment_record_id=None,
        processing_error=None,
        event_time=created_at,
        created_at=created_at,
    )


def make_event(kind: EventKind, **overrides: Any) -> NormalizedEvent:
    """Create a normalized webhook event for the mobile store."""
    fields: dict[str, Any] = {
        "kind": kind,
        "store": Store.MOBILE,
        "correlation_key": "purchase-token-0001",
        "event_time": NOW,
    }
    fields.update(overrides)
    return NormalizedEvent(**fields)



def create_payment(
    subscription: Subscription,
    store_transaction_id: str = "GPA.1234-5678-9012-34567",
    amount_minor: int = 999,
    transaction_type: TransactionType = TransactionType.CHARGE,
) -> PaymentRecord:
    """Create a completed payment record for a subscription."""
    return PaymentRecord(
        id=uuid4(),
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        store=subscription.store,
        store_transaction_id=store_transaction_id,
        transaction_type=transaction_type,
        amount_minor=amount_minor,
        currency="USD",
        status=PaymentStatus.COMPLETED,
        transaction_date=NOW - timedelta(days=20),
        original_payment_id=None,
        exported=False,
        created_at=NOW - timedelta(days=20),
    )
