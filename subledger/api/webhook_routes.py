"""
Webhook Routes - Inbound store notifications.

NO DICTIONARIES - All requests/responses use Pydantic models.

Answers the store's delivery contract: 2xx acknowledges (including duplicates,
ignored types and queued mismatches), anything else is redelivered.
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subledger.api.dependencies import get_normalizers, get_store_clients
from subledger.api.errors import http_error, status_for
from subledger.config import settings
from subledger.db.session import get_write_db
from subledger.exceptions import SubscriptionLedgerError
from subledger.models.api import AppStoreNotificationRequest, Store, WebhookAckResponse
from subledger.observability.metrics import metrics
from subledger.services.billing_client import StoreClients
from subledger.services.normalizer import Normalizers
from subledger.services.webhooks import WebhookOutcome, WebhookService

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


def _service(db: AsyncSession, clients: StoreClients, normalizers: Normalizers) -> WebhookService:
    return WebhookService(
        db, clients, normalizers, default_grace_days=settings.default_grace_period_days
    )


def _respond(outcome: WebhookOutcome, response: Response) -> WebhookAckResponse:
    response.status_code = outcome.http_status
    return WebhookAckResponse(status=outcome.status, event_id=outcome.event_id)


def _failed(store: Store, exc: SubscriptionLedgerError) -> HTTPException:
    code = status_for(exc)
    metrics.record_webhook(store.value, f"error_{code}")
    if code >= 500:
        logger.error(
            "webhook_processing_failed",
            store=store.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )
    else:
        logger.warning(
            "webhook_rejected",
            store=store.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )
    return http_error(exc)


@router.post("/google-play", response_model=WebhookAckResponse)
async def google_play_webhook(
    request: Request,
    response: Response,
    authorization: str | None = Header(None),
    db: AsyncSession = Depends(get_write_db),
    clients: StoreClients = Depends(get_store_clients),
    normalizers: Normalizers = Depends(get_normalizers),
) -> WebhookAckResponse:
    """
    Google Play Real-Time Developer Notification (Pub/Sub push).

    Pub/Sub retries any non-2xx answer with backoff.
    """
    payload = await request.body()
    try:
        outcome = await _service(db, clients, normalizers).handle_google_play(
            payload, authorization
        )
    except SubscriptionLedgerError as exc:
        raise _failed(Store.MOBILE, exc) from exc
    return _respond(outcome, response)


@router.post("/app-store", response_model=WebhookAckResponse)
async def app_store_webhook(
    body: AppStoreNotificationRequest,
    response: Response,
    db: AsyncSession = Depends(get_write_db),
    clients: StoreClients = Depends(get_store_clients),
    normalizers: Normalizers = Depends(get_normalizers),
) -> WebhookAckResponse:
    """
    App Store Server Notification V2.

    Apple retries non-2xx answers up to 5 times over 3 days.
    """
    try:
        outcome = await _service(db, clients, normalizers).handle_app_store(body.signedPayload)
    except SubscriptionLedgerError as exc:
        raise _failed(Store.APPSTORE, exc) from exc
    return _respond(outcome, response)


@router.post("/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    response: Response,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_write_db),
    clients: StoreClients = Depends(get_store_clients),
    normalizers: Normalizers = Depends(get_normalizers),
) -> WebhookAckResponse:
    """Stripe webhook (payment_intent.succeeded, charge.refunded)."""
    payload = await request.body()
    try:
        outcome = await _service(db, clients, normalizers).handle_stripe(
            payload, stripe_signature
        )
    except SubscriptionLedgerError as exc:
        raise _failed(Store.WEB, exc) from exc
    return _respond(outcome, response)
