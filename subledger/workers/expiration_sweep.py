"""
Expiration Sweep Worker - Ends entitlement whose period has elapsed.

NO DICTIONARIES - All data uses strongly typed models.

Catches subscriptions whose store never sent (or we never received) the
terminal notification. Every due subscription is expired through the
transaction processor in its own session and transaction, so one bad row
never blocks the rest of the batch.
"""

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from sqlalchemy import ColumnElement, and_, case, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subledger.db.models import Subscription, utc_now
from subledger.exceptions import SubscriptionLedgerError
from subledger.models.api import EventKind, EventSource, SubscriptionStatus
from subledger.models.domain import WorkerResult
from subledger.observability.metrics import metrics
from subledger.services.ledger import SWEEPABLE_STATUSES
from subledger.services.transaction_processor import SubscriptionTransactionProcessor
from subledger.workers.base import PeriodicWorker, SessionFactory

logger = get_logger(__name__)


def effective_end_column() -> ColumnElement[datetime]:
    """SQL form of the entitlement end: the grace window while in grace."""
    return case(
        (
            and_(
                Subscription.status == SubscriptionStatus.GRACE,
                Subscription.grace_period_end.is_not(None),
                Subscription.grace_period_end > Subscription.current_period_end,
            ),
            Subscription.grace_period_end,
        ),
        else_=Subscription.current_period_end,
    )


class ExpirationSweepWorker(PeriodicWorker):
    """Expires entitled subscriptions whose effective end is in the past."""

    name = "expiration_sweep"

    def __init__(
        self,
        session_factory: SessionFactory,
        interval_seconds: float,
        batch_size: int = 1000,
        default_grace_days: int = 16,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(session_factory, interval_seconds, clock=clock)
        self.batch_size = batch_size
        self.default_grace_days = default_grace_days

    def _processor(self, session: AsyncSession) -> SubscriptionTransactionProcessor:
        return SubscriptionTransactionProcessor(
            session, clock=self.clock, default_grace_days=self.default_grace_days
        )

    async def find_due(self, now: datetime) -> list[UUID]:
        """Ids of subscriptions due for expiry, oldest end first."""
        end = effective_end_column()
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.status.in_(SWEEPABLE_STATUSES),
                end <= now,
            )
            .order_by(end)
            .limit(self.batch_size)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _run(self) -> WorkerResult:
        now = self.clock()
        due = await self.find_due(now)
        logger.info("expiration_sweep_started", due=len(due), cutoff=now.isoformat())

        expired = 0
        errors = 0
        for subscription_id in due:
            try:
                async with self.session_factory() as session:
                    application = await self._processor(session).expire_if_due(
                        subscription_id, EventSource.SWEEP
                    )
            except (SubscriptionLedgerError, SQLAlchemyError) as exc:
                errors += 1
                metrics.record_worker_item(self.name, "error")
                logger.error(
                    "expiration_sweep_item_failed",
                    subscription_id=str(subscription_id),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                await self._record_error(subscription_id, exc)
                continue

            if application.applied and application.subscription.status == SubscriptionStatus.EXPIRED:
                expired += 1
                metrics.record_worker_item(self.name, "expired")
            else:
                metrics.record_worker_item(self.name, "skipped")

        result = WorkerResult(
            worker=self.name, processed=len(due), updated=expired, expired=expired, errors=errors
        )
        await self._record_tally(result)
        return result

    async def _record_error(self, subscription_id: UUID, exc: Exception) -> None:
        try:
            async with self.session_factory() as session:
                await self._processor(session).record_processing_error(
                    error=f"{type(exc).__name__}: {exc}",
                    subscription_id=subscription_id,
                    source=EventSource.SWEEP,
                    kind=EventKind.EXPIRED,
                )
        except (SubscriptionLedgerError, SQLAlchemyError):
            logger.exception("processing_error_not_recorded", subscription_id=str(subscription_id))

    async def _record_tally(self, result: WorkerResult) -> None:
        async with self.session_factory() as session:
            await self._processor(session).record_system_event(
                EventKind.EXPIRED,
                EventSource.SWEEP,
                {
                    "worker": result.worker,
                    "processed": result.processed,
                    "expired": result.expired,
                    "errors": result.errors,
                },
            )
