"""
Store Billing Client Protocol - Store-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.

One client per store is constructed at startup and passed explicitly to the
webhook handlers, subscription routes and workers through `StoreClients`.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from structlog import get_logger

from subledger.config import Settings
from subledger.exceptions import StoreNotConfiguredError
from subledger.models.api import Store
from subledger.models.apple_storekit import AppleStoreKitConfig
from subledger.models.domain import StoreSubscriptionState
from subledger.services.apple_jws import AppleJWSVerifier
from subledger.services.retry import RetryPolicy

logger = get_logger(__name__)


class StoreBillingClient(Protocol):
    """
    Billing API of one store.

    Every method applies the store call policy (timeout, retry with backoff)
    and raises:
        StoreUnavailableError: The store kept timing out or failing transiently
        StoreRejectedError: The store answered definitively (unknown token, 4xx)
        UnsupportedStoreOperationError: The store has no developer API for it
    """

    store: Store

    async def validate_subscription(
        self, product_ref: str | None, correlation_key: str, now: datetime
    ) -> StoreSubscriptionState:
        """Fetch the authoritative status of one subscription."""
        ...

    async def cancel(self, product_ref: str | None, correlation_key: str) -> None:
        """Stop auto-renewal at the store."""
        ...

    async def restore(self, product_ref: str | None, correlation_key: str) -> None:
        """Re-enable auto-renewal at the store."""
        ...

    async def refund(
        self, product_ref: str | None, correlation_key: str, transaction_id: str | None
    ) -> None:
        """Refund the latest charge at the store."""
        ...


@dataclass(frozen=True)
class StoreClients:
    """Registry of the configured store billing clients."""

    google_play: StoreBillingClient | None = None
    app_store: StoreBillingClient | None = None
    web: StoreBillingClient | None = None

    def for_store(self, store: Store) -> StoreBillingClient:
        """
        Client for a store.

        Raises:
            StoreNotConfiguredError: Store credentials were not configured
        """
        client = {
            Store.MOBILE: self.google_play,
            Store.APPSTORE: self.app_store,
            Store.WEB: self.web,
        }[store]
        if client is None:
            raise StoreNotConfiguredError(store)
        return client

    def is_configured(self, store: Store) -> bool:
        try:
            self.for_store(store)
        except StoreNotConfiguredError:
            return False
        return True


def build_store_clients(settings: Settings, apple_verifier: AppleJWSVerifier | None) -> StoreClients:
    """
    Construct one client per configured store.

    Called once at startup; unconfigured stores stay None and their webhooks
    and store calls answer "not configured".
    """
    from subledger.services.apple_storekit_provider import AppStoreBillingClient
    from subledger.services.google_play_provider import GooglePlayBillingClient
    from subledger.services.stripe_provider import StripeBillingClient

    policy = RetryPolicy.from_settings(settings)

    google_play: StoreBillingClient | None = None
    if settings.google_play_configured:
        google_play = GooglePlayBillingClient(
            service_account_json=settings.google_play_service_account,
            package_name=settings.google_play_package_name,
            policy=policy,
        )

    app_store: StoreBillingClient | None = None
    if settings.app_store_configured and apple_verifier is not None:
        app_store = AppStoreBillingClient(
            config=AppleStoreKitConfig(
                key_id=settings.apple_key_id,
                issuer_id=settings.apple_issuer_id,
                private_key=settings.apple_private_key,
                bundle_id=settings.apple_bundle_id,
                environment=settings.apple_environment,
            ),
            verifier=apple_verifier,
            policy=policy,
        )

    web: StoreBillingClient | None = None
    if settings.stripe_configured:
        web = StripeBillingClient(
            api_key=settings.stripe_api_key,
            webhook_secret=settings.stripe_webhook_secret,
            policy=policy,
        )

    logger.info(
        "store_clients_built",
        google_play=google_play is not None,
        app_store=app_store is not None,
        web=web is not None,
    )
    return StoreClients(google_play=google_play, app_store=app_store, web=web)


def build_apple_verifier(settings: Settings) -> AppleJWSVerifier | None:
    """Apple JWS verifier from the configured root certificates."""
    if not settings.apple_bundle_id:
        return None
    return AppleJWSVerifier.from_files(
        settings.apple_root_certificates,
        require_chain=settings.apple_require_signature_verification,
    )
