"""
Google Play Billing Client Implementation.

NO DICTIONARIES - All data uses strongly typed models.

Wraps the Android Publisher API `purchases.subscriptions` resource. The
google-api-python-client is synchronous, so each request runs in a worker
thread under the store call policy.
"""

import asyncio
import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from structlog import get_logger

from subledger.exceptions import (
    StoreRejectedError,
    StoreTransientError,
    UnsupportedStoreOperationError,
)
from subledger.models.api import Store
from subledger.models.domain import StoreSubscriptionState
from subledger.models.google_play import GooglePlaySubscriptionPurchase
from subledger.services.retry import RetryPolicy, call_with_retries

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"


def load_service_account_credentials(service_account_json: str) -> service_account.Credentials:
    """Credentials from raw JSON or from a path to the JSON key file."""
    if service_account_json.lstrip().startswith("{"):
        return service_account.Credentials.from_service_account_info(  # type: ignore[no-untyped-call]
            json.loads(service_account_json),
            scopes=[ANDROID_PUBLISHER_SCOPE],
        )
    return service_account.Credentials.from_service_account_file(  # type: ignore[no-untyped-call]
        service_account_json,
        scopes=[ANDROID_PUBLISHER_SCOPE],
    )


class GooglePlayBillingClient:
    """
    Google Play subscription billing client.

    Handles subscription validation, cancellation, refund and acknowledgement.
    """

    store = Store.MOBILE

    def __init__(
        self,
        service_account_json: str,
        package_name: str,
        policy: RetryPolicy,
        service: Any = None,
    ) -> None:
        """
        Initialize Google Play client.

        Args:
            service_account_json: Path to service account JSON or the raw JSON
            package_name: Android package name (e.g., 'com.example.listings')
            policy: Timeout and retry policy for every call
            service: Prebuilt androidpublisher resource (tests)
        """
        self.package_name = package_name
        self.policy = policy

        if service is None:
            credentials = load_service_account_credentials(service_account_json)
            service = build(
                "androidpublisher", "v3", credentials=credentials, cache_discovery=False
            )
        self.service = service

        logger.info("google_play_client_initialized", package_name=package_name)

    async def _execute(self, operation: str, request_factory: Callable[[], Any]) -> dict[str, object]:
        """Run one API request under the call policy, classifying failures."""

        async def attempt() -> dict[str, object]:
            request = request_factory()
            try:
                result = await asyncio.to_thread(request.execute)
            except HttpError as exc:
                status = exc.resp.status
                error_content = exc.content.decode("utf-8") if exc.content else str(exc)
                if status == 429 or status >= 500:
                    raise StoreTransientError(Store.MOBILE, operation, f"HTTP {status}") from exc
                logger.error(
                    "google_play_api_rejected",
                    operation=operation,
                    status=status,
                    error=error_content,
                )
                raise StoreRejectedError(Store.MOBILE, operation, status, error_content) from exc
            except OSError as exc:
                raise StoreTransientError(Store.MOBILE, operation, str(exc)) from exc
            return result or {}

        return await call_with_retries(
            attempt, store=Store.MOBILE, name=operation, policy=self.policy
        )

    def _subscriptions(self) -> Any:
        return self.service.purchases().subscriptions()

    async def get_subscription_purchase(
        self, subscription_id: str, purchase_token: str
    ) -> GooglePlaySubscriptionPurchase:
        """
        Fetch the authoritative subscription purchase.

        Raises:
            StoreRejectedError: Unknown token (404/410) or bad credentials
            StoreUnavailableError: Google kept failing transiently
        """
        logger.info("fetching_google_play_subscription", subscription_id=subscription_id)

        result = await self._execute(
            "subscriptions.get",
            lambda: self._subscriptions().get(
                packageName=self.package_name,
                subscriptionId=subscription_id,
                token=purchase_token,
            ),
        )
        try:
            return GooglePlaySubscriptionPurchase.from_api(purchase_token, result)
        except (ValueError, TypeError) as exc:
            raise StoreRejectedError(Store.MOBILE, "subscriptions.get", 200, str(exc)) from exc

    async def validate_subscription(
        self, product_ref: str | None, correlation_key: str, now: datetime
    ) -> StoreSubscriptionState:
        """Authoritative store state of a purchase token."""
        if not product_ref:
            raise StoreRejectedError(Store.MOBILE, "subscriptions.get", 400, "subscriptionId required")

        purchase = await self.get_subscription_purchase(product_ref, correlation_key)
        state = purchase.store_state(product_ref, now)

        logger.info(
            "google_play_subscription_validated",
            subscription_id=product_ref,
            state=state.state.value,
            expires_at=state.expires_at.isoformat(),
            auto_renewing=state.auto_renewing,
        )
        return state

    async def cancel(self, product_ref: str | None, correlation_key: str) -> None:
        """Stop auto-renewal; the subscription stays valid until expiry."""
        if not product_ref:
            raise StoreRejectedError(Store.MOBILE, "subscriptions.cancel", 400, "subscriptionId required")

        await self._execute(
            "subscriptions.cancel",
            lambda: self._subscriptions().cancel(
                packageName=self.package_name,
                subscriptionId=product_ref,
                token=correlation_key,
            ),
        )
        logger.info("google_play_subscription_canceled", subscription_id=product_ref)

    async def restore(self, product_ref: str | None, correlation_key: str) -> None:
        """Play has no developer API to undo a cancellation; users resubscribe in the Play Store."""
        raise UnsupportedStoreOperationError(Store.MOBILE, "restore")

    async def refund(
        self, product_ref: str | None, correlation_key: str, transaction_id: str | None
    ) -> None:
        """Refund the latest charge; the subscription keeps running until expiry."""
        if not product_ref:
            raise StoreRejectedError(Store.MOBILE, "subscriptions.refund", 400, "subscriptionId required")

        await self._execute(
            "subscriptions.refund",
            lambda: self._subscriptions().refund(
                packageName=self.package_name,
                subscriptionId=product_ref,
                token=correlation_key,
            ),
        )
        logger.info(
            "google_play_subscription_refunded",
            subscription_id=product_ref,
            order_id=transaction_id,
        )

    async def acknowledge(self, product_ref: str, correlation_key: str) -> None:
        """Acknowledge a new purchase (Google refunds unacknowledged ones after 3 days)."""
        await self._execute(
            "subscriptions.acknowledge",
            lambda: self._subscriptions().acknowledge(
                packageName=self.package_name,
                subscriptionId=product_ref,
                token=correlation_key,
                body={},
            ),
        )
        logger.info("google_play_purchase_acknowledged", subscription_id=product_ref)
