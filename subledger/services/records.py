"""
ORM to domain conversions shared by the processor, workers and routes.

NO DICTIONARIES - All conversions return strongly typed domain models.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from subledger.db.models import PaymentRecord, Product, Subscription, SubscriptionEvent
from subledger.models.domain import (
    PaymentRecordData,
    ProductData,
    SubscriptionData,
    SubscriptionEventData,
)
from subledger.services.ledger import LedgerState


def subscription_to_domain(subscription: Subscription) -> SubscriptionData:
    """Convert ORM subscription to domain model."""
    return SubscriptionData(
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        store=subscription.store,
        product_id=subscription.product_id,
        store_product_id=subscription.store_product_id,
        correlation_key=subscription.correlation_key,
        status=subscription.status,
        auto_renewing=subscription.auto_renewing,
        start_date=subscription.start_date,
        current_period_end=subscription.current_period_end,
        trial_end_date=subscription.trial_end_date,
        grace_period_end=subscription.grace_period_end,
        canceled_at=subscription.canceled_at,
        price_minor=subscription.price_minor,
        currency=subscription.currency,
        validation_attempts=subscription.validation_attempts,
        last_validated_at=subscription.last_validated_at,
        created_at=subscription.created_at,
        updated_at=subscription.updated_at,
    )


def payment_to_domain(payment: PaymentRecord) -> PaymentRecordData:
    """Convert ORM payment record to domain model."""
    return PaymentRecordData(
        payment_id=payment.id,
        user_id=payment.user_id,
        subscription_id=payment.subscription_id,
        store=payment.store,
        store_transaction_id=payment.store_transaction_id,
        transaction_type=payment.transaction_type,
        amount_minor=payment.amount_minor,
        currency=payment.currency,
        status=payment.status,
        transaction_date=payment.transaction_date,
        created_at=payment.created_at,
    )


def event_to_domain(event: SubscriptionEvent) -> SubscriptionEventData:
    """Convert ORM audit event to domain model."""
    return SubscriptionEventData(
        event_id=event.id,
        subscription_id=event.subscription_id,
        event_kind=event.event_kind,
        source=event.source,
        previous_status=event.previous_status,
        new_status=event.new_status,
        period_end_before=event.period_end_before,
        period_end_after=event.period_end_after,
        applied=event.applied,
        has_financial_impact=event.has_financial_impact,
        amount_minor=event.amount_minor,
        currency=event.currency,
        notification_id=event.notification_id,
        processing_error=event.processing_error,
        event_time=event.event_time,
        created_at=event.created_at,
    )


def product_to_domain(product: Product) -> ProductData:
    """Convert ORM catalog product to domain model."""
    return ProductData(
        product_id=product.product_id,
        name=product.name,
        billing_period=product.billing_period,
        price_minor=product.price_minor,
        currency=product.currency,
        google_play_product_id=product.google_play_product_id,
        app_store_product_id=product.app_store_product_id,
        stripe_price_id=product.stripe_price_id,
        trial_period_days=product.trial_period_days,
        grace_period_days=product.grace_period_days,
        is_active=product.is_active,
    )


def ledger_state_of(subscription: Subscription) -> LedgerState:
    """Snapshot the ledger-governed fields of an ORM subscription."""
    return LedgerState(
        store=subscription.store,
        status=subscription.status,
        current_period_end=subscription.current_period_end,
        auto_renewing=subscription.auto_renewing,
        grace_period_end=subscription.grace_period_end,
        trial_end_date=subscription.trial_end_date,
        canceled_at=subscription.canceled_at,
        last_validated_at=subscription.last_validated_at,
        last_event_at=subscription.last_event_at,
    )


def apply_ledger_state(subscription: Subscription, state: LedgerState) -> None:
    """Write a ledger snapshot back onto the ORM subscription."""
    subscription.status = state.status
    subscription.current_period_end = state.current_period_end
    subscription.auto_renewing = state.auto_renewing
    subscription.grace_period_end = state.grace_period_end
    subscription.trial_end_date = state.trial_end_date
    subscription.canceled_at = state.canceled_at
    subscription.last_validated_at = state.last_validated_at
    subscription.last_event_at = state.last_event_at


def json_safe(value: object) -> object:
    """Make a raw store payload storable as JSONB."""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def isoformat_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
