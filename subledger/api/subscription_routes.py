"""
Subscription Routes - The authenticated user's subscriptions and entitlement.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subledger.api.dependencies import get_current_user_id, get_store_clients, get_workers
from subledger.api.errors import http_error
from subledger.config import settings
from subledger.db.session import get_read_db, get_write_db
from subledger.exceptions import SubscriptionLedgerError
from subledger.models.api import (
    CancelSubscriptionRequest,
    EntitlementResponse,
    LinkAppStoreRequest,
    LinkGooglePlayRequest,
    PaymentRecordListResponse,
    PaymentRecordResponse,
    Store,
    SubscriptionEventListResponse,
    SubscriptionEventResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
)
from subledger.models.domain import (
    PaymentRecordData,
    SubscriptionData,
    SubscriptionEventData,
)
from subledger.services.billing_client import StoreClients
from subledger.services.purchase_link import PurchaseLinkService
from subledger.services.queries import SubscriptionQueryService
from subledger.services.transaction_processor import SubscriptionTransactionProcessor
from subledger.workers.registry import Workers

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["subscriptions"])


# ============================================================================
# Response conversion
# ============================================================================


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def subscription_response(subscription: SubscriptionData) -> SubscriptionResponse:
    return SubscriptionResponse(
        subscription_id=subscription.subscription_id,
        user_id=subscription.user_id,
        store=subscription.store,
        product_id=subscription.product_id,
        store_product_id=subscription.store_product_id,
        status=subscription.status,
        auto_renewing=subscription.auto_renewing,
        start_date=subscription.start_date.isoformat(),
        current_period_end=subscription.current_period_end.isoformat(),
        trial_end_date=_iso(subscription.trial_end_date),
        grace_period_end=_iso(subscription.grace_period_end),
        canceled_at=_iso(subscription.canceled_at),
        price_minor=subscription.price_minor,
        currency=subscription.currency,
        last_validated_at=_iso(subscription.last_validated_at),
    )


def event_response(event: SubscriptionEventData) -> SubscriptionEventResponse:
    return SubscriptionEventResponse(
        event_id=event.event_id,
        event_kind=event.event_kind,
        source=event.source,
        previous_status=event.previous_status,
        new_status=event.new_status,
        applied=event.applied,
        has_financial_impact=event.has_financial_impact,
        amount_minor=event.amount_minor,
        currency=event.currency,
        notification_id=event.notification_id,
        processing_error=event.processing_error,
        event_time=event.event_time.isoformat(),
        created_at=event.created_at.isoformat(),
    )


def payment_response(payment: PaymentRecordData) -> PaymentRecordResponse:
    return PaymentRecordResponse(
        payment_id=payment.payment_id,
        subscription_id=payment.subscription_id,
        store=payment.store,
        store_transaction_id=payment.store_transaction_id,
        transaction_type=payment.transaction_type,
        amount_minor=payment.amount_minor,
        currency=payment.currency,
        status=payment.status,
        transaction_date=payment.transaction_date.isoformat(),
    )


def _processor(db: AsyncSession) -> SubscriptionTransactionProcessor:
    return SubscriptionTransactionProcessor(
        db, default_grace_days=settings.default_grace_period_days
    )


# ============================================================================
# Read endpoints
# ============================================================================


@router.get("/subscriptions", response_model=SubscriptionListResponse)
async def list_subscriptions(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_read_db),
) -> SubscriptionListResponse:
    """All subscriptions of the caller, newest first."""
    subscriptions = await SubscriptionQueryService(db).list_for_user(user_id)
    return SubscriptionListResponse(
        subscriptions=[subscription_response(s) for s in subscriptions],
        total=len(subscriptions),
    )


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_read_db),
) -> SubscriptionResponse:
    try:
        subscription = await SubscriptionQueryService(db).get_owned(subscription_id, user_id)
    except SubscriptionLedgerError as exc:
        raise http_error(exc) from exc
    return subscription_response(subscription)


@router.get(
    "/subscriptions/{subscription_id}/events", response_model=SubscriptionEventListResponse
)
async def list_subscription_events(
    subscription_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_read_db),
) -> SubscriptionEventListResponse:
    """Audit trail of one subscription, oldest first."""
    queries = SubscriptionQueryService(db)
    try:
        await queries.get_owned(subscription_id, user_id)
    except SubscriptionLedgerError as exc:
        raise http_error(exc) from exc
    events = await queries.events(subscription_id)
    return SubscriptionEventListResponse(
        events=[event_response(e) for e in events], total=len(events)
    )


@router.get(
    "/subscriptions/{subscription_id}/payments", response_model=PaymentRecordListResponse
)
async def list_subscription_payments(
    subscription_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_read_db),
) -> PaymentRecordListResponse:
    """Charges and refunds of one subscription."""
    queries = SubscriptionQueryService(db)
    try:
        await queries.get_owned(subscription_id, user_id)
    except SubscriptionLedgerError as exc:
        raise http_error(exc) from exc
    payments = await queries.payments(subscription_id)
    return PaymentRecordListResponse(
        payments=[payment_response(p) for p in payments], total=len(payments)
    )


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_read_db),
) -> EntitlementResponse:
    """Whether the caller is entitled right now, and through which subscription."""
    projection = await SubscriptionQueryService(db).entitlement(user_id)
    return EntitlementResponse(
        user_id=projection.user_id,
        is_subscribed=projection.is_subscribed,
        subscription_status=projection.status,
        expires_at=_iso(projection.expires_at),
        source=projection.source,
        plan=projection.plan,
        active_subscription_id=projection.active_subscription_id,
    )


# ============================================================================
# Commands
# ============================================================================


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: UUID,
    body: CancelSubscriptionRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_write_db),
    clients: StoreClients = Depends(get_store_clients),
) -> SubscriptionResponse:
    """
    Cancel the caller's subscription.

    Renewal is stopped at the store first; App Store subscriptions can only
    be canceled from the user's Apple account.
    """
    try:
        subscription = await SubscriptionQueryService(db).get_owned(subscription_id, user_id)
        client = clients.for_store(subscription.store)
        await client.cancel(subscription.store_product_id, subscription.correlation_key)
        application = await _processor(db).cancel_subscription(
            subscription_id, user_id, immediate=body.immediate, reason=body.reason
        )
    except SubscriptionLedgerError as exc:
        logger.warning(
            "subscription_cancel_failed",
            subscription_id=str(subscription_id),
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise http_error(exc) from exc

    logger.info(
        "subscription_canceled_by_user",
        subscription_id=str(subscription_id),
        immediate=body.immediate,
        status=application.subscription.status.value,
    )
    return subscription_response(application.subscription)


@router.post("/subscriptions/{subscription_id}/restore", response_model=SubscriptionResponse)
async def restore_subscription(
    subscription_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_write_db),
    clients: StoreClients = Depends(get_store_clients),
) -> SubscriptionResponse:
    """Re-enable auto-renew of a subscription pending cancellation."""
    try:
        subscription = await SubscriptionQueryService(db).get_owned(subscription_id, user_id)
        client = clients.for_store(subscription.store)
        await client.restore(subscription.store_product_id, subscription.correlation_key)
        application = await _processor(db).restore_subscription(subscription_id, user_id)
    except SubscriptionLedgerError as exc:
        raise http_error(exc) from exc
    return subscription_response(application.subscription)


@router.post("/subscriptions/{subscription_id}/verify", response_model=SubscriptionResponse)
async def verify_subscription(
    subscription_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_read_db),
    workers: Workers = Depends(get_workers),
) -> SubscriptionResponse:
    """Reconcile the subscription with its store now and return the result."""
    queries = SubscriptionQueryService(db)
    try:
        await queries.get_owned(subscription_id, user_id)
        application = await workers.reconciliation.reconcile_subscription(subscription_id)
    except SubscriptionLedgerError as exc:
        raise http_error(exc) from exc

    if application is not None:
        return subscription_response(application.subscription)
    # No drift: re-read through the reconciler's own session
    async with workers.reconciliation.session_factory() as session:
        current = await SubscriptionQueryService(session).get(subscription_id)
    return subscription_response(current)


@router.post(
    "/subscriptions/google-play/link",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def link_google_play_purchase(
    body: LinkGooglePlayRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_write_db),
    clients: StoreClients = Depends(get_store_clients),
) -> SubscriptionResponse:
    """Link a Google Play purchase token to the caller after checkout."""
    return await _link(db, clients, user_id, Store.MOBILE, body.subscription_id, body.purchase_token)


@router.post(
    "/subscriptions/app-store/link",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def link_app_store_purchase(
    body: LinkAppStoreRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_write_db),
    clients: StoreClients = Depends(get_store_clients),
) -> SubscriptionResponse:
    """Link an App Store original transaction id to the caller after checkout."""
    return await _link(
        db, clients, user_id, Store.APPSTORE, body.product_id, body.original_transaction_id
    )


async def _link(
    db: AsyncSession,
    clients: StoreClients,
    user_id: UUID,
    store: Store,
    product_ref: str,
    correlation_key: str,
) -> SubscriptionResponse:
    service = PurchaseLinkService(
        db, clients, default_grace_days=settings.default_grace_period_days
    )
    try:
        subscription = await service.link(user_id, store, product_ref, correlation_key)
    except SubscriptionLedgerError as exc:
        logger.warning(
            "purchase_link_failed",
            store=store.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise http_error(exc) from exc
    return subscription_response(subscription)

