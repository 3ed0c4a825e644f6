"""
Google Play domain models - Immutable dataclasses for subscription validation.

NO DICTIONARIES - All data uses strongly typed models.

Two shapes come from Google Play: the Real-Time Developer Notification
delivered over Pub/Sub, and the authoritative `purchases.subscriptions`
resource fetched from the Android Publisher API.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum

from subledger.models.api import Store
from subledger.models.domain import StoreState, StoreSubscriptionState


class GooglePlayNotificationType(IntEnum):
    """subscriptionNotification.notificationType codes."""

    SUBSCRIPTION_RECOVERED = 1
    SUBSCRIPTION_RENEWED = 2
    SUBSCRIPTION_CANCELED = 3
    SUBSCRIPTION_PURCHASED = 4
    SUBSCRIPTION_ON_HOLD = 5
    SUBSCRIPTION_IN_GRACE_PERIOD = 6
    SUBSCRIPTION_RESTARTED = 7
    SUBSCRIPTION_PRICE_CHANGE_CONFIRMED = 8
    SUBSCRIPTION_DEFERRED = 9
    SUBSCRIPTION_PAUSED = 10
    SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED = 11
    SUBSCRIPTION_REVOKED = 12
    SUBSCRIPTION_EXPIRED = 13
    SUBSCRIPTION_PENDING_PURCHASE_CANCELED = 20


class GooglePlayPaymentState(IntEnum):
    """purchases.subscriptions paymentState values."""

    PENDING = 0  # renewal payment failed, store is retrying
    RECEIVED = 1
    FREE_TRIAL = 2
    PENDING_DEFERRED = 3


def millis_to_datetime(value: str | int | None) -> datetime | None:
    """Google returns epoch milliseconds as strings."""
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


def micros_to_minor(micros: str | int | None) -> int | None:
    """priceAmountMicros (1/1,000,000 of the unit) to minor units (1/100)."""
    if micros is None or micros == "":
        return None
    return int(micros) // 10_000


@dataclass(frozen=True)
class GooglePlayNotification:
    """Decoded Pub/Sub push carrying one DeveloperNotification."""

    message_id: str  # Pub/Sub message id, used for deduplication
    package_name: str
    event_time: datetime
    notification_type: int | None  # None for test notifications
    purchase_token: str | None
    subscription_id: str | None  # Play Console product id (SKU)
    version: str = "1.0"
    is_test: bool = False
    raw: dict[str, object] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        """Validate notification fields."""
        if not self.message_id:
            raise ValueError("message_id required")
        if not self.package_name:
            raise ValueError("Package name required")
        if not self.is_test:
            if self.notification_type is None:
                raise ValueError("notificationType required")
            if not self.purchase_token or len(self.purchase_token) < 10:
                raise ValueError("Invalid purchase token")
            if not self.subscription_id:
                raise ValueError("subscriptionId required")


@dataclass(frozen=True)
class GooglePlaySubscriptionPurchase:
    """Authoritative `purchases.subscriptions.get` resource."""

    purchase_token: str
    start_time: datetime
    expiry_time: datetime
    auto_renewing: bool
    order_id: str | None = None  # GPA.xxxx..N, suffix increments on each renewal
    price_amount_micros: int | None = None
    price_currency_code: str | None = None
    payment_state: int | None = None  # absent once expired
    cancel_reason: int | None = None  # 0 user, 1 system, 2 replaced, 3 developer
    user_cancellation_time: datetime | None = None
    acknowledgement_state: int = 1
    linked_purchase_token: str | None = None
    obfuscated_external_account_id: str | None = None
    auto_resume_time: datetime | None = None
    purchase_type: int | None = None  # None real, 0 test, 1 promo
    raw: dict[str, object] = field(default_factory=dict, compare=False)

    @classmethod
    def from_api(cls, purchase_token: str, data: dict[str, object]) -> "GooglePlaySubscriptionPurchase":
        """
        Build from the Android Publisher API response.

        Raises:
            ValueError: startTimeMillis or expiryTimeMillis missing
        """
        start_time = millis_to_datetime(data.get("startTimeMillis"))  # type: ignore[arg-type]
        expiry_time = millis_to_datetime(data.get("expiryTimeMillis"))  # type: ignore[arg-type]
        if start_time is None or expiry_time is None:
            raise ValueError("Subscription purchase missing start or expiry time")

        def optional_int(key: str) -> int | None:
            value = data.get(key)
            return int(value) if value is not None else None  # type: ignore[call-overload]

        return cls(
            purchase_token=purchase_token,
            start_time=start_time,
            expiry_time=expiry_time,
            auto_renewing=bool(data.get("autoRenewing", False)),
            order_id=data.get("orderId"),  # type: ignore[arg-type]
            price_amount_micros=optional_int("priceAmountMicros"),
            price_currency_code=data.get("priceCurrencyCode"),  # type: ignore[arg-type]
            payment_state=optional_int("paymentState"),
            cancel_reason=optional_int("cancelReason"),
            user_cancellation_time=millis_to_datetime(data.get("userCancellationTimeMillis")),  # type: ignore[arg-type]
            acknowledgement_state=optional_int("acknowledgementState") or 0,
            linked_purchase_token=data.get("linkedPurchaseToken"),  # type: ignore[arg-type]
            obfuscated_external_account_id=data.get("obfuscatedExternalAccountId"),  # type: ignore[arg-type]
            auto_resume_time=millis_to_datetime(data.get("autoResumeTimeMillis")),  # type: ignore[arg-type]
            purchase_type=optional_int("purchaseType"),
            raw=data,
        )

    @property
    def is_free_trial(self) -> bool:
        return self.payment_state == GooglePlayPaymentState.FREE_TRIAL

    @property
    def amount_minor(self) -> int | None:
        """Charged amount; a free trial charges nothing."""
        if self.is_free_trial:
            return 0
        return micros_to_minor(self.price_amount_micros)

    def needs_acknowledgement(self) -> bool:
        """Unacknowledged purchases are refunded by Google after three days."""
        return self.acknowledgement_state == 0

    def is_test_purchase(self) -> bool:
        """License tester purchase."""
        return self.purchase_type == 0

    def state_at(self, now: datetime) -> StoreState:
        """Interpret the resource as a canonical store state."""
        expired = self.expiry_time <= now
        if expired and self.auto_resume_time is not None:
            return StoreState.PAUSED
        if expired and self.payment_state == GooglePlayPaymentState.PENDING:
            return StoreState.ON_HOLD
        if expired:
            return StoreState.EXPIRED
        if self.payment_state == GooglePlayPaymentState.PENDING:
            return StoreState.GRACE
        if self.cancel_reason is not None or not self.auto_renewing:
            return StoreState.CANCELED_PENDING
        return StoreState.ACTIVE

    def store_state(self, store_product_id: str | None, now: datetime) -> StoreSubscriptionState:
        """Canonical validation result for reconciliation."""
        state = self.state_at(now)
        return StoreSubscriptionState(
            store=Store.MOBILE,
            correlation_key=self.purchase_token,
            state=state,
            expires_at=self.expiry_time,
            checked_at=now,
            auto_renewing=self.auto_renewing,
            store_product_id=store_product_id,
            grace_period_end=self.expiry_time if state == StoreState.GRACE else None,
            latest_transaction_id=self.order_id,
            original_transaction_id=self.order_id.split("..")[0] if self.order_id else None,
            amount_minor=self.amount_minor,
            currency=self.price_currency_code,
            is_trial=self.is_free_trial,
            account_token=self.obfuscated_external_account_id,
            start_time=self.start_time,
            environment="sandbox" if self.is_test_purchase() else "production",
            needs_acknowledgement=self.needs_acknowledgement(),
        )
