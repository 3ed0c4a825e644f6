"""
Apple StoreKit domain models - Immutable dataclasses for subscription validation.

NO DICTIONARIES - All data uses strongly typed models.

Apple App Store Server API v2 and Server Notifications V2 deliver
transaction, renewal and notification data as JWS (JSON Web Signature).
These models hold the decoded payloads once the signature chain is verified.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum

from subledger.models.api import Store
from subledger.models.domain import StoreState, StoreSubscriptionState


def millis_to_datetime(value: object) -> datetime | None:
    """Apple timestamps are epoch milliseconds."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)  # type: ignore[call-overload]


class AppleSubscriptionStatusCode(IntEnum):
    """Status values of the Get All Subscription Statuses endpoint."""

    ACTIVE = 1
    EXPIRED = 2
    BILLING_RETRY = 3
    BILLING_GRACE_PERIOD = 4
    REVOKED = 5


@dataclass(frozen=True)
class AppleTransactionInfo:
    """Verified Apple StoreKit transaction (JWSTransactionDecodedPayload)."""

    transaction_id: str  # Unique transaction identifier
    original_transaction_id: str  # First transaction in subscription chain
    product_id: str  # Product identifier from App Store Connect
    bundle_id: str  # App's bundle ID
    purchase_date: datetime  # When this period was purchased
    original_purchase_date: datetime
    type: str  # "Auto-Renewable Subscription", ...
    environment: str  # "Production" or "Sandbox"
    signed_date: datetime | None = None

    # Optional fields
    app_account_token: str | None = None  # UUID linked to user account
    in_app_ownership_type: str | None = None  # "PURCHASED" or "FAMILY_SHARED"
    expires_date: datetime | None = None
    revocation_date: datetime | None = None
    revocation_reason: int | None = None  # 0: other, 1: app issue
    is_upgraded: bool = False
    price: int | None = None  # milliunits of the currency
    currency: str | None = None
    offer_type: int | None = None  # 1: intro, 2: promo, 3: offer code, 4: win-back
    offer_discount_type: str | None = None  # "FREE_TRIAL", "PAY_AS_YOU_GO", ...

    @classmethod
    def from_payload(cls, data: dict[str, object]) -> "AppleTransactionInfo":
        """
        Build from a decoded JWS payload.

        Raises:
            KeyError: A required field is missing
        """
        purchase_date = millis_to_datetime(data["purchaseDate"])
        if purchase_date is None:
            raise KeyError("purchaseDate")
        return cls(
            transaction_id=str(data["transactionId"]),
            original_transaction_id=str(data["originalTransactionId"]),
            product_id=str(data["productId"]),
            bundle_id=str(data["bundleId"]),
            purchase_date=purchase_date,
            original_purchase_date=millis_to_datetime(data.get("originalPurchaseDate"))
            or purchase_date,
            type=str(data.get("type", "Auto-Renewable Subscription")),
            environment=str(data.get("environment", "Production")),
            signed_date=millis_to_datetime(data.get("signedDate")),
            app_account_token=data.get("appAccountToken"),  # type: ignore[arg-type]
            in_app_ownership_type=data.get("inAppOwnershipType"),  # type: ignore[arg-type]
            expires_date=millis_to_datetime(data.get("expiresDate")),
            revocation_date=millis_to_datetime(data.get("revocationDate")),
            revocation_reason=data.get("revocationReason"),  # type: ignore[arg-type]
            is_upgraded=bool(data.get("isUpgraded", False)),
            price=data.get("price"),  # type: ignore[arg-type]
            currency=data.get("currency"),  # type: ignore[arg-type]
            offer_type=data.get("offerType"),  # type: ignore[arg-type]
            offer_discount_type=data.get("offerDiscountType"),  # type: ignore[arg-type]
        )

    @property
    def amount_minor(self) -> int | None:
        """Price in minor units (Apple reports milliunits)."""
        if self.is_free_trial:
            return 0
        if self.price is None:
            return None
        return int(self.price) // 10

    @property
    def is_free_trial(self) -> bool:
        return self.offer_type == 1 and self.offer_discount_type == "FREE_TRIAL"

    def is_valid(self) -> bool:
        """Transaction is valid if not revoked."""
        return self.revocation_date is None

    def is_sandbox(self) -> bool:
        """Check if this is a sandbox (test) transaction."""
        return self.environment.lower() == "sandbox"


@dataclass(frozen=True)
class AppleRenewalInfo:
    """Subscription renewal information (JWSRenewalInfoDecodedPayload)."""

    original_transaction_id: str
    product_id: str
    auto_renew_status: int  # 0: off, 1: on
    expiration_intent: int | None = None  # Why subscription expired
    grace_period_expires_date: datetime | None = None
    is_in_billing_retry_period: bool = False
    renewal_date: datetime | None = None
    offer_type: int | None = None

    @classmethod
    def from_payload(cls, data: dict[str, object]) -> "AppleRenewalInfo":
        """Build from a decoded JWS payload."""
        return cls(
            original_transaction_id=str(data.get("originalTransactionId", "")),
            product_id=str(data.get("productId", "")),
            auto_renew_status=int(data.get("autoRenewStatus", 0)),  # type: ignore[call-overload]
            expiration_intent=data.get("expirationIntent"),  # type: ignore[arg-type]
            grace_period_expires_date=millis_to_datetime(data.get("gracePeriodExpiresDate")),
            is_in_billing_retry_period=bool(data.get("isInBillingRetryPeriod", False)),
            renewal_date=millis_to_datetime(data.get("renewalDate")),
            offer_type=data.get("offerType"),  # type: ignore[arg-type]
        )

    def will_renew(self) -> bool:
        """Check if subscription will auto-renew."""
        return self.auto_renew_status == 1


@dataclass(frozen=True)
class AppleStoreKitWebhookEvent:
    """Apple App Store Server Notification V2 event.

    Notification types mapped to lifecycle events:
    - SUBSCRIBED: Initial subscription or resubscribe
    - DID_RENEW: Subscription renewed (subtype BILLING_RECOVERY after retry)
    - DID_CHANGE_RENEWAL_STATUS: User toggled auto-renew
    - DID_FAIL_TO_RENEW: Renewal failed (subtype GRACE_PERIOD keeps access)
    - GRACE_PERIOD_EXPIRED: Grace period ended without recovery
    - EXPIRED: Subscription expired
    - REFUND: Refund was issued
    - REVOKE: Access revoked (Family Sharing)
    - RENEWAL_EXTENDED: Renewal date extended
    - TEST: Test notification
    """

    notification_type: str  # e.g., "REFUND", "DID_RENEW"
    subtype: str | None  # e.g., "INITIAL_BUY", "GRACE_PERIOD"
    notification_uuid: str  # Unique notification ID
    version: str  # API version (e.g., "2.0")
    signed_date: datetime  # When notification was signed
    environment: str  # "Production" or "Sandbox"
    bundle_id: str | None = None
    transaction_info: AppleTransactionInfo | None = None
    renewal_info: AppleRenewalInfo | None = None
    raw: dict[str, object] = field(default_factory=dict, compare=False)

    def is_test(self) -> bool:
        """Check if this is a test notification."""
        return self.notification_type == "TEST"


@dataclass(frozen=True)
class AppleSubscriptionStatus:
    """One entry of the Get All Subscription Statuses response."""

    original_transaction_id: str
    status: int
    transaction_info: AppleTransactionInfo
    renewal_info: AppleRenewalInfo | None = None

    def state(self) -> StoreState:
        """Interpret the Apple status code as a canonical store state."""
        if self.status == AppleSubscriptionStatusCode.ACTIVE:
            if self.renewal_info is not None and not self.renewal_info.will_renew():
                return StoreState.CANCELED_PENDING
            return StoreState.ACTIVE
        if self.status == AppleSubscriptionStatusCode.BILLING_GRACE_PERIOD:
            return StoreState.GRACE
        if self.status == AppleSubscriptionStatusCode.BILLING_RETRY:
            return StoreState.ON_HOLD
        if self.status == AppleSubscriptionStatusCode.REVOKED:
            return StoreState.REVOKED
        return StoreState.EXPIRED

    def store_state(self, now: datetime) -> StoreSubscriptionState:
        """Canonical validation result for reconciliation."""
        tx = self.transaction_info
        renewal = self.renewal_info
        return StoreSubscriptionState(
            store=Store.APPSTORE,
            correlation_key=self.original_transaction_id,
            state=self.state(),
            expires_at=tx.expires_date or tx.purchase_date,
            checked_at=now,
            auto_renewing=renewal.will_renew() if renewal is not None else False,
            store_product_id=tx.product_id,
            grace_period_end=renewal.grace_period_expires_date if renewal is not None else None,
            latest_transaction_id=tx.transaction_id,
            original_transaction_id=tx.original_transaction_id,
            amount_minor=tx.amount_minor,
            currency=tx.currency,
            is_trial=tx.is_free_trial,
            account_token=tx.app_account_token,
            start_time=tx.original_purchase_date,
            environment=tx.environment.lower(),
        )


@dataclass(frozen=True)
class AppleStoreKitConfig:
    """Configuration for Apple App Store Server API."""

    key_id: str  # Key ID from App Store Connect
    issuer_id: str  # Issuer ID from App Store Connect
    private_key: str  # Private key (.p8 contents, PEM or base64 PEM)
    bundle_id: str  # App bundle ID
    environment: str  # "production" or "sandbox"

    @property
    def api_base_url(self) -> str:
        """Get the API base URL for the configured environment."""
        if self.environment.lower() == "sandbox":
            return "https://api.storekit-sandbox.itunes.apple.com"
        return "https://api.storekit.itunes.apple.com"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.key_id:
            raise ValueError("StoreKit key_id is required")
        if not self.issuer_id:
            raise ValueError("StoreKit issuer_id is required")
        if not self.private_key:
            raise ValueError("StoreKit private_key is required")
        if not self.bundle_id:
            raise ValueError("StoreKit bundle_id is required")
        if self.environment.lower() not in ("production", "sandbox"):
            raise ValueError("Environment must be 'production' or 'sandbox'")
