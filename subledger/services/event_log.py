"""
Event Log - Append-only audit trail of every subscription transition.

NO DICTIONARIES - All data uses strongly typed models.

Rows are only ever inserted, and only inside the transaction processor's
atomic unit; the append does not commit. Renewals advance a subscription in
place, so each row carries the period end before and after and the full
history is reconstructable from this log alone.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subledger.db.models import SubscriptionEvent, utc_now
from subledger.models.api import EventKind, EventSource, Store, SubscriptionStatus
from subledger.models.domain import SubscriptionEventData
from subledger.services.records import event_to_domain, json_safe


@dataclass(frozen=True)
class HistoryTransition:
    """One replayed step of a subscription's history."""

    event_id: UUID
    event_kind: EventKind
    source: EventSource
    previous_status: SubscriptionStatus | None
    new_status: SubscriptionStatus | None
    period_end_before: datetime | None
    period_end_after: datetime | None
    event_time: datetime
    consistent: bool  # previous_status matched the status replayed so far


@dataclass(frozen=True)
class ReconstructedHistory:
    """Status history replayed from the event log."""

    transitions: tuple[HistoryTransition, ...]
    final_status: SubscriptionStatus | None
    final_period_end: datetime | None

    @property
    def consistent(self) -> bool:
        return all(t.consistent for t in self.transitions)

    def matches(self, status: SubscriptionStatus) -> bool:
        """True when the replay is unbroken and ends at the given status."""
        return self.consistent and self.final_status == status


def reconstruct_history(events: Sequence[SubscriptionEventData]) -> ReconstructedHistory:
    """
    Replay applied events in order and check the status chain.

    Events that were logged but not applied (stale, failed) are skipped; a
    break in the chain means some status write bypassed the log.
    """
    ordered = sorted(
        (e for e in events if e.applied and e.subscription_id is not None),
        key=lambda e: e.created_at,
    )

    transitions: list[HistoryTransition] = []
    status: SubscriptionStatus | None = None
    period_end: datetime | None = None

    for event in ordered:
        consistent = status is None or event.previous_status == status
        transitions.append(
            HistoryTransition(
                event_id=event.event_id,
                event_kind=event.event_kind,
                source=event.source,
                previous_status=event.previous_status,
                new_status=event.new_status,
                period_end_before=event.period_end_before,
                period_end_after=event.period_end_after,
                event_time=event.event_time,
                consistent=consistent,
            )
        )
        if event.new_status is not None:
            status = event.new_status
        if event.period_end_after is not None:
            period_end = event.period_end_after

    return ReconstructedHistory(
        transitions=tuple(transitions),
        final_status=status,
        final_period_end=period_end,
    )


class EventLog:
    """Append-only access to subscription_events."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize event log with database session."""
        self.session = session

    def append(
        self,
        *,
        event_kind: EventKind,
        source: EventSource,
        event_time: datetime,
        subscription_id: UUID | None = None,
        user_id: UUID | None = None,
        store: Store | None = None,
        previous_status: SubscriptionStatus | None = None,
        new_status: SubscriptionStatus | None = None,
        period_end_before: datetime | None = None,
        period_end_after: datetime | None = None,
        applied: bool = True,
        notification_id: str | None = None,
        notification_type: str | None = None,
        raw_notification: dict[str, object] | None = None,
        amount_minor: int | None = None,
        currency: str | None = None,
        payment_record_id: UUID | None = None,
        processing_error: str | None = None,
    ) -> SubscriptionEvent:
        """
        Stage one audit row in the current transaction.

        The caller owns flush and commit so the row lands atomically with
        the subscription and payment writes it describes.
        """
        row = SubscriptionEvent(
            id=uuid4(),
            subscription_id=subscription_id,
            user_id=user_id,
            event_kind=event_kind,
            source=source,
            store=store,
            previous_status=previous_status,
            new_status=new_status,
            period_end_before=period_end_before,
            period_end_after=period_end_after,
            applied=applied,
            notification_id=notification_id,
            notification_type=notification_type,
            raw_notification=json_safe(raw_notification or {}),
            has_financial_impact=payment_record_id is not None,
            amount_minor=amount_minor,
            currency=currency,
            payment_record_id=payment_record_id,
            processing_error=processing_error,
            event_time=event_time,
            created_at=utc_now(),
        )
        self.session.add(row)
        return row

    async def find_by_notification_id(self, notification_id: str) -> SubscriptionEvent | None:
        """Find the logged event for a store notification id."""
        stmt = select(SubscriptionEvent).where(
            SubscriptionEvent.notification_id == notification_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def notification_exists(self, notification_id: str | None) -> bool:
        if notification_id is None:
            return False
        return await self.find_by_notification_id(notification_id) is not None

    async def history(self, subscription_id: UUID) -> list[SubscriptionEventData]:
        """All events of one subscription, oldest first."""
        stmt = (
            select(SubscriptionEvent)
            .where(SubscriptionEvent.subscription_id == subscription_id)
            .order_by(SubscriptionEvent.created_at)
        )
        result = await self.session.execute(stmt)
        return [event_to_domain(row) for row in result.scalars().all()]

    async def system_events(
        self, kind: EventKind = EventKind.RECONCILED, limit: int = 50
    ) -> list[SubscriptionEventData]:
        """Most recent system-level events (worker tallies), newest first."""
        stmt = (
            select(SubscriptionEvent)
            .where(
                SubscriptionEvent.event_kind == kind,
                SubscriptionEvent.subscription_id.is_(None),
            )
            .order_by(SubscriptionEvent.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [event_to_domain(row) for row in result.scalars().all()]
