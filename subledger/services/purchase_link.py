"""
Purchase Linking - Attach a store purchase reported by the client app.

NO DICTIONARIES - All data uses strongly typed models.

The client sends the purchase token (Google Play) or original transaction id
(App Store) right after checkout, usually before the store notification
arrives. The purchase is validated against the store before anything is
written; entitlement is never granted on the client's word.
"""

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subledger.db.models import utc_now
from subledger.exceptions import (
    CorrelationConflictError,
    StoreRejectedError,
    SubscriptionLedgerError,
)
from subledger.models.api import EventSource, Store
from subledger.models.domain import SubscriptionData
from subledger.services.billing_client import StoreClients
from subledger.services.google_play_provider import GooglePlayBillingClient
from subledger.services.normalizer import purchase_event_from_store_state
from subledger.services.transaction_processor import SubscriptionTransactionProcessor

logger = get_logger(__name__)


class PurchaseLinkService:
    """Validates and records client-reported store purchases."""

    def __init__(
        self,
        session: AsyncSession,
        clients: StoreClients,
        clock: Callable[[], datetime] = utc_now,
        default_grace_days: int = 16,
    ) -> None:
        self.clients = clients
        self._clock = clock
        self.processor = SubscriptionTransactionProcessor(
            session, clock=clock, default_grace_days=default_grace_days
        )

    async def link(
        self,
        user_id: UUID,
        store: Store,
        product_ref: str,
        correlation_key: str,
    ) -> SubscriptionData:
        """
        Link a store purchase to the user.

        An already-linked purchase of the same user is returned unchanged.

        Raises:
            CorrelationConflictError: Purchase belongs to another user
            StoreRejectedError: Purchase not valid or not entitling
            StoreUnavailableError: Store kept failing transiently
            ProductNotFoundError: Store product not in the catalog
        """
        existing = await self.processor.find_subscription(store, correlation_key)
        if existing is not None:
            if existing.user_id != user_id:
                raise CorrelationConflictError(store, correlation_key, existing.user_id)
            logger.info(
                "purchase_already_linked",
                store=store.value,
                subscription_id=str(existing.subscription_id),
            )
            return existing

        client = self.clients.for_store(store)
        state = await client.validate_subscription(product_ref, correlation_key, self._clock())
        if not state.grants_entitlement:
            raise StoreRejectedError(
                store, "validate_subscription", 409, f"Purchase is {state.state.value}"
            )
        if state.account_token and state.account_token != str(user_id):
            raise StoreRejectedError(
                store, "validate_subscription", 403, "Purchase is linked to a different account"
            )

        event = purchase_event_from_store_state(
            state, EventSource.API, account_token=str(user_id)
        )
        application = await self.processor.apply_store_event(event)

        if state.needs_acknowledgement and isinstance(client, GooglePlayBillingClient):
            try:
                await client.acknowledge(product_ref, correlation_key)
            except SubscriptionLedgerError as exc:
                logger.warning("google_play_acknowledge_failed", error=str(exc))

        logger.info(
            "purchase_linked",
            store=store.value,
            user_id=str(user_id),
            subscription_id=str(application.subscription.subscription_id),
            status=application.subscription.status.value,
        )
        return application.subscription
