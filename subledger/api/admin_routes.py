"""
Admin API routes for operating the ledger.

Protected by the X-Admin-Key header. Covers the unresolved notification
queue, on-demand worker passes and the per-subscription audit replay.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subledger.api.dependencies import get_workers, require_admin_key
from subledger.api.errors import http_error
from subledger.db.models import UnresolvedNotification
from subledger.db.session import get_read_db
from subledger.exceptions import SubscriptionLedgerError
from subledger.models.api import (
    AuditTransitionResponse,
    SubscriptionAuditResponse,
    UnresolvedNotificationListResponse,
    UnresolvedNotificationResponse,
    UnresolvedStatus,
    WorkerRunResponse,
)
from subledger.models.domain import WorkerResult
from subledger.services.queries import SubscriptionQueryService
from subledger.workers.registry import Workers

logger = get_logger(__name__)
router = APIRouter(
    prefix="/v1/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


def _unresolved_response(item: UnresolvedNotification) -> UnresolvedNotificationResponse:
    return UnresolvedNotificationResponse(
        item_id=item.id,
        store=item.store,
        correlation_key=item.correlation_key,
        store_product_id=item.store_product_id,
        reason=item.reason,
        error_kind=item.error_kind,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


def _worker_response(result: WorkerResult) -> WorkerRunResponse:
    return WorkerRunResponse(
        worker=result.worker,
        processed=result.processed,
        updated=result.updated,
        expired=result.expired,
        errors=result.errors,
        resolved=result.resolved,
    )


# ============================================================================
# Unresolved notification queue
# ============================================================================


@router.get("/unresolved-notifications", response_model=UnresolvedNotificationListResponse)
async def list_unresolved_notifications(
    status_filter: UnresolvedStatus | None = Query(UnresolvedStatus.OPEN, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_read_db),
) -> UnresolvedNotificationListResponse:
    """Notifications that referenced an unknown subscription, product or user."""
    items = await SubscriptionQueryService(db).unresolved(status=status_filter, limit=limit)
    return UnresolvedNotificationListResponse(
        items=[_unresolved_response(item) for item in items],
        total=len(items),
    )


# ============================================================================
# Worker passes
# ============================================================================


@router.post("/reconciliation/run", response_model=WorkerRunResponse)
async def run_reconciliation(workers: Workers = Depends(get_workers)) -> WorkerRunResponse:
    """Run one reconciliation pass now and return its tally."""
    logger.info("admin_worker_run_requested", worker=workers.reconciliation.name)
    return _worker_response(await workers.reconciliation.run_once())


@router.post("/expiration-sweep/run", response_model=WorkerRunResponse)
async def run_expiration_sweep(workers: Workers = Depends(get_workers)) -> WorkerRunResponse:
    """Run one expiration sweep now and return its tally."""
    logger.info("admin_worker_run_requested", worker=workers.expiration_sweep.name)
    return _worker_response(await workers.expiration_sweep.run_once())


# ============================================================================
# Audit
# ============================================================================


@router.get("/subscriptions/{subscription_id}/audit", response_model=SubscriptionAuditResponse)
async def audit_subscription(
    subscription_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> SubscriptionAuditResponse:
    """
    Replay the event log of a subscription and compare it with the stored row.

    `consistent` is false when a transition's previous status does not match
    the replayed chain, or when the replay ends at a different status.
    """
    try:
        subscription, history = await SubscriptionQueryService(db).audit(subscription_id)
    except SubscriptionLedgerError as exc:
        raise http_error(exc) from exc

    consistent = history.matches(subscription.status)
    if not consistent:
        logger.warning(
            "subscription_audit_inconsistent",
            subscription_id=str(subscription_id),
            current_status=subscription.status.value,
            reconstructed_status=history.final_status.value if history.final_status else None,
        )

    return SubscriptionAuditResponse(
        subscription_id=subscription.subscription_id,
        current_status=subscription.status,
        reconstructed_status=history.final_status,
        consistent=consistent,
        transitions=[
            AuditTransitionResponse(
                event_id=t.event_id,
                event_kind=t.event_kind,
                previous_status=t.previous_status,
                new_status=t.new_status,
                period_end_after=t.period_end_after.isoformat() if t.period_end_after else None,
                event_time=t.event_time.isoformat(),
                consistent=t.consistent,
            )
            for t in history.transitions
        ],
    )

