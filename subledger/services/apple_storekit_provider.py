"""
Apple App Store Billing Client Implementation.

NO DICTIONARIES - All data uses strongly typed models.

Uses Apple App Store Server API v2 for subscription status lookup.
https://developer.apple.com/documentation/appstoreserverapi

Apple offers no developer API to cancel or refund a subscription; users do
both through their Apple account, and the outcome arrives as a notification.
"""

import base64
import binascii
import time
from datetime import datetime

import httpx
import jwt
from structlog import get_logger

from subledger.exceptions import (
    StoreRejectedError,
    StoreTransientError,
    UnsupportedStoreOperationError,
)
from subledger.models.api import Store
from subledger.models.apple_storekit import (
    AppleRenewalInfo,
    AppleStoreKitConfig,
    AppleSubscriptionStatus,
    AppleTransactionInfo,
)
from subledger.models.domain import StoreSubscriptionState
from subledger.services.apple_jws import AppleJWSVerifier
from subledger.services.retry import RetryPolicy, call_with_retries

logger = get_logger(__name__)


class AppStoreBillingClient:
    """
    Apple App Store Server API client.

    Handles subscription status lookup and transaction history.
    """

    store = Store.APPSTORE

    def __init__(
        self,
        config: AppleStoreKitConfig,
        verifier: AppleJWSVerifier,
        policy: RetryPolicy,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize App Store client.

        Args:
            config: StoreKit configuration with API credentials
            verifier: Chain verifier for the signed data in API responses
            policy: Timeout and retry policy for every call
            http_client: Shared HTTP client (created lazily when omitted)
        """
        self.config = config
        self.verifier = verifier
        self.policy = policy
        self._http_client = http_client
        self._jwt_token: str | None = None
        self._jwt_expires_at: float = 0

        logger.info(
            "apple_storekit_client_initialized",
            bundle_id=config.bundle_id,
            environment=config.environment,
        )

    def _private_key_pem(self) -> str:
        """The .p8 key, accepting PEM text or base64-encoded PEM."""
        private_key = self.config.private_key
        if "-----BEGIN" in private_key:
            return private_key
        try:
            return base64.b64decode(private_key, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return private_key

    def _generate_jwt(self) -> str:
        """
        Generate JWT for App Store Server API authentication.

        The JWT is valid for up to 60 minutes and reused until 5 minutes
        before it expires.
        """
        now = time.time()

        if self._jwt_token and now < (self._jwt_expires_at - 300):
            return self._jwt_token

        expires_at = now + 3600
        payload = {
            "iss": self.config.issuer_id,
            "iat": int(now),
            "exp": int(expires_at),
            "aud": "appstoreconnect-v1",
            "bid": self.config.bundle_id,
        }

        # Apple requires ES256
        token = jwt.encode(
            payload,
            self._private_key_pem(),
            algorithm="ES256",
            headers={"kid": self.config.key_id},
        )

        self._jwt_token = token
        self._jwt_expires_at = expires_at
        return token

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(base_url=self.config.api_base_url)
        return self._http_client

    async def _get(self, operation: str, endpoint: str) -> dict[str, object]:
        """Authenticated GET under the call policy, classifying failures."""

        async def attempt() -> dict[str, object]:
            headers = {"Authorization": f"Bearer {self._generate_jwt()}"}
            try:
                response = await self._client().get(endpoint, headers=headers)
            except httpx.TransportError as exc:
                raise StoreTransientError(Store.APPSTORE, operation, str(exc)) from exc

            if response.status_code == 429 or response.status_code >= 500:
                raise StoreTransientError(
                    Store.APPSTORE, operation, f"HTTP {response.status_code}"
                )
            if response.status_code >= 400:
                logger.error(
                    "apple_storekit_api_rejected",
                    operation=operation,
                    status=response.status_code,
                    error=response.text,
                )
                raise StoreRejectedError(
                    Store.APPSTORE, operation, response.status_code, response.text
                )

            result: dict[str, object] = response.json()
            return result

        return await call_with_retries(
            attempt, store=Store.APPSTORE, name=operation, policy=self.policy
        )

    async def get_subscription_statuses(
        self, original_transaction_id: str
    ) -> list[AppleSubscriptionStatus]:
        """
        Get All Subscription Statuses for an original transaction id.

        Raises:
            StoreRejectedError: Unknown transaction or bad credentials
            StoreUnavailableError: Apple kept failing transiently
            InvalidSignatureError: Signed data in the response failed verification
        """
        result = await self._get(
            "subscriptions.status", f"/inApps/v1/subscriptions/{original_transaction_id}"
        )

        statuses: list[AppleSubscriptionStatus] = []
        for group in result.get("data", []):  # type: ignore[attr-defined]
            for item in group.get("lastTransactions", []):
                transaction = AppleTransactionInfo.from_payload(
                    self.verifier.verify(item["signedTransactionInfo"])
                )
                renewal = None
                if item.get("signedRenewalInfo"):
                    renewal = AppleRenewalInfo.from_payload(
                        self.verifier.verify(item["signedRenewalInfo"])
                    )
                statuses.append(
                    AppleSubscriptionStatus(
                        original_transaction_id=str(item["originalTransactionId"]),
                        status=int(item["status"]),
                        transaction_info=transaction,
                        renewal_info=renewal,
                    )
                )
        return statuses

    async def validate_subscription(
        self, product_ref: str | None, correlation_key: str, now: datetime
    ) -> StoreSubscriptionState:
        """Authoritative store state of an original transaction id."""
        statuses = await self.get_subscription_statuses(correlation_key)
        matching = [s for s in statuses if s.original_transaction_id == correlation_key]
        if not matching:
            raise StoreRejectedError(
                Store.APPSTORE, "subscriptions.status", 404, "No status for transaction"
            )

        # Prefer the entry for the subscribed product, else the latest expiry
        chosen = max(
            matching,
            key=lambda s: (
                s.transaction_info.product_id == product_ref,
                s.transaction_info.expires_date or s.transaction_info.purchase_date,
            ),
        )
        state = chosen.store_state(now)

        logger.info(
            "apple_subscription_validated",
            original_transaction_id=correlation_key,
            state=state.state.value,
            expires_at=state.expires_at.isoformat(),
            auto_renewing=state.auto_renewing,
        )
        return state

    async def get_transaction_history(
        self, original_transaction_id: str
    ) -> list[AppleTransactionInfo]:
        """All transactions of a subscription chain, following pagination."""
        transactions: list[AppleTransactionInfo] = []
        revision: str | None = None

        while True:
            endpoint = f"/inApps/v2/history/{original_transaction_id}"
            if revision:
                endpoint += f"?revision={revision}"

            result = await self._get("transactions.history", endpoint)
            for signed_data in result.get("signedTransactions", []):  # type: ignore[attr-defined]
                transactions.append(AppleTransactionInfo.from_payload(self.verifier.verify(signed_data)))

            if not result.get("hasMore", False):
                break
            revision = str(result.get("revision"))

        logger.info(
            "apple_transaction_history_retrieved",
            original_transaction_id=original_transaction_id,
            count=len(transactions),
        )
        return transactions

    async def cancel(self, product_ref: str | None, correlation_key: str) -> None:
        """Users cancel through their Apple account."""
        raise UnsupportedStoreOperationError(Store.APPSTORE, "cancel")

    async def restore(self, product_ref: str | None, correlation_key: str) -> None:
        """Users re-enable renewal through their Apple account."""
        raise UnsupportedStoreOperationError(Store.APPSTORE, "restore")

    async def refund(
        self, product_ref: str | None, correlation_key: str, transaction_id: str | None
    ) -> None:
        """Refunds are requested from Apple by the user."""
        raise UnsupportedStoreOperationError(Store.APPSTORE, "refund")

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
