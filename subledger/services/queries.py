"""
Subscription Queries - Read-only access for the HTTP surface.

NO DICTIONARIES - All results are strongly typed domain models.

Runs on the read session (replica when configured); never writes.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subledger.db.models import PaymentRecord, Subscription, UnresolvedNotification, utc_now
from subledger.exceptions import SubscriptionNotFoundError
from subledger.models.api import UnresolvedStatus
from subledger.models.domain import (
    EntitlementProjection,
    PaymentRecordData,
    SubscriptionData,
    SubscriptionEventData,
)
from subledger.services.entitlements import compute_entitlement
from subledger.services.event_log import EventLog, ReconstructedHistory, reconstruct_history
from subledger.services.records import payment_to_domain, subscription_to_domain


class SubscriptionQueryService:
    """Read model of subscriptions, payments and the audit log."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with a (read) database session."""
        self.session = session
        self.event_log = EventLog(session)

    async def list_for_user(self, user_id: UUID) -> list[SubscriptionData]:
        """All of a user's subscriptions, newest first."""
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return [subscription_to_domain(row) for row in result.scalars().all()]

    async def get(self, subscription_id: UUID) -> SubscriptionData:
        """
        Raises:
            SubscriptionNotFoundError: Unknown subscription
        """
        row = await self.session.get(Subscription, subscription_id)
        if row is None:
            raise SubscriptionNotFoundError(str(subscription_id))
        return subscription_to_domain(row)

    async def get_owned(self, subscription_id: UUID, user_id: UUID) -> SubscriptionData:
        """
        A subscription of the given user.

        Another user's subscription is reported as not found.

        Raises:
            SubscriptionNotFoundError: Unknown or not owned
        """
        subscription = await self.get(subscription_id)
        if subscription.user_id != user_id:
            raise SubscriptionNotFoundError(str(subscription_id))
        return subscription

    async def events(self, subscription_id: UUID) -> list[SubscriptionEventData]:
        return await self.event_log.history(subscription_id)

    async def payments(self, subscription_id: UUID) -> list[PaymentRecordData]:
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.subscription_id == subscription_id)
            .order_by(PaymentRecord.transaction_date)
        )
        result = await self.session.execute(stmt)
        return [payment_to_domain(row) for row in result.scalars().all()]

    async def entitlement(self, user_id: UUID) -> EntitlementProjection:
        """Entitlement computed live from the subscriptions, not the cached projection."""
        stmt = select(Subscription).where(Subscription.user_id == user_id)
        result = await self.session.execute(stmt)
        return compute_entitlement(user_id, list(result.scalars().all()), utc_now())

    async def audit(self, subscription_id: UUID) -> tuple[SubscriptionData, ReconstructedHistory]:
        """Current state next to the history replayed from the event log."""
        subscription = await self.get(subscription_id)
        history = reconstruct_history(await self.event_log.history(subscription_id))
        return subscription, history

    async def unresolved(
        self, status: UnresolvedStatus | None = UnresolvedStatus.OPEN, limit: int = 100
    ) -> list[UnresolvedNotification]:
        stmt = select(UnresolvedNotification).order_by(UnresolvedNotification.created_at.desc())
        if status is not None:
            stmt = stmt.where(UnresolvedNotification.status == status)
        result = await self.session.execute(stmt.limit(limit))
        return list(result.scalars().all())
