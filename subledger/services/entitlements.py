"""
Entitlement Projection - Derived "is this user entitled" cache on the user row.

NO DICTIONARIES - All data uses strongly typed models.

The projection is never a source of truth: it is recomputed from the user's
subscriptions on every subscription change, inside the same transaction.
"""

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from structlog import get_logger

from subledger.db.models import Subscription, User
from subledger.models.domain import EntitlementProjection
from subledger.observability.metrics import metrics
from subledger.services.ledger import ENTITLED_STATUSES, effective_end

logger = get_logger(__name__)


def compute_entitlement(
    user_id: UUID,
    subscriptions: Sequence[Subscription],
    now: datetime,
) -> EntitlementProjection:
    """
    Derive a user's entitlement from their subscriptions.

    Entitled when at least one subscription is in an entitled status with an
    effective end in the future; the one ending last is reported. Otherwise
    the status of the most recently updated subscription is reported with no
    expiry.
    """
    entitled = [
        s
        for s in subscriptions
        if s.status in ENTITLED_STATUSES
        and effective_end(s.status, s.current_period_end, s.grace_period_end) > now
    ]

    if entitled:
        best = max(
            entitled,
            key=lambda s: effective_end(s.status, s.current_period_end, s.grace_period_end),
        )
        return EntitlementProjection(
            user_id=user_id,
            is_subscribed=True,
            status=best.status,
            expires_at=effective_end(best.status, best.current_period_end, best.grace_period_end),
            source=best.store,
            plan=best.product_id,
            active_subscription_id=best.id,
        )

    if not subscriptions:
        return EntitlementProjection(user_id=user_id, is_subscribed=False)

    latest = max(subscriptions, key=lambda s: s.updated_at)
    return EntitlementProjection(
        user_id=user_id,
        is_subscribed=False,
        status=latest.status,
        expires_at=None,
        source=latest.store,
        plan=latest.product_id,
        active_subscription_id=None,
    )


class EntitlementWriter:
    """Single writer of the user entitlement projection columns."""

    def write(
        self,
        user: User,
        subscriptions: Sequence[Subscription],
        now: datetime,
        last_payment_at: datetime | None = None,
    ) -> EntitlementProjection:
        """
        Recompute and stage the projection on the locked user row.

        Touches only the projection columns; the caller commits.
        """
        projection = compute_entitlement(user.id, subscriptions, now)
        was_subscribed = bool(user.is_subscribed)

        user.is_subscribed = projection.is_subscribed
        user.subscription_status = projection.status
        user.subscription_expires_at = projection.expires_at
        user.subscription_source = projection.source
        user.subscription_plan = projection.plan
        user.active_subscription_id = projection.active_subscription_id
        user.entitlement_updated_at = now
        if last_payment_at is not None:
            user.last_payment_at = last_payment_at

        if was_subscribed != projection.is_subscribed:
            metrics.record_entitlement_change(projection.is_subscribed)
            logger.info(
                "entitlement_changed",
                user_id=str(user.id),
                is_subscribed=projection.is_subscribed,
                status=projection.status.value if projection.status else None,
            )

        return projection
