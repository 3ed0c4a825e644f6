"""
Notification Normalizer - Store payloads to canonical NormalizedEvent.

NO DICTIONARIES - All data uses strongly typed models.

One adapter per store. Adapters verify and decode the store envelope and map
the store's notification vocabulary onto the closed EventKind set. They never
touch the database; an unmapped or test notification normalizes to None and
is acknowledged without any state change.
"""

import base64
import binascii
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from structlog import get_logger

from subledger.config import Settings
from subledger.exceptions import InvalidSignatureError, MalformedPayloadError
from subledger.models.api import EventKind, EventSource, Store
from subledger.models.apple_storekit import (
    AppleRenewalInfo,
    AppleStoreKitWebhookEvent,
    AppleTransactionInfo,
    millis_to_datetime as apple_millis_to_datetime,
)
from subledger.models.domain import (
    NormalizedEvent,
    PaymentEvent,
    ProductData,
    StoreSubscriptionState,
)
from subledger.models.google_play import (
    GooglePlayNotification,
    GooglePlayNotificationType,
    millis_to_datetime,
)
from subledger.models.stripe import StripeWebhookEvent
from subledger.services.apple_jws import AppleJWSVerifier

logger = get_logger(__name__)

GP = GooglePlayNotificationType

# RTDN notificationType -> canonical kind (8, 11, 20 are informational)
GOOGLE_PLAY_EVENT_KINDS: dict[int, EventKind] = {
    GP.SUBSCRIPTION_RECOVERED: EventKind.RECOVERED,
    GP.SUBSCRIPTION_RENEWED: EventKind.RENEWED,
    GP.SUBSCRIPTION_CANCELED: EventKind.CANCELED,
    GP.SUBSCRIPTION_PURCHASED: EventKind.PURCHASED,
    GP.SUBSCRIPTION_ON_HOLD: EventKind.EXPIRED,
    GP.SUBSCRIPTION_IN_GRACE_PERIOD: EventKind.GRACE_PERIOD_ENTERED,
    GP.SUBSCRIPTION_RESTARTED: EventKind.RESTARTED,
    GP.SUBSCRIPTION_DEFERRED: EventKind.RENEWAL_EXTENDED,
    GP.SUBSCRIPTION_PAUSED: EventKind.PAUSED,
    GP.SUBSCRIPTION_REVOKED: EventKind.REVOKED,
    GP.SUBSCRIPTION_EXPIRED: EventKind.EXPIRED,
}

# Kinds whose store transaction represents a charge
CHARGE_KINDS = frozenset({EventKind.PURCHASED, EventKind.RENEWED, EventKind.RECOVERED})

TokenVerifier = Callable[[str, str], dict[str, object]]


def _verify_google_oidc_token(token: str, audience: str) -> dict[str, object]:
    claims: dict[str, object] = id_token.verify_oauth2_token(  # type: ignore[no-untyped-call]
        token, google_requests.Request(), audience=audience
    )
    return claims


def refund_transaction_id(transaction_id: str) -> str:
    """Ledger id of the refund of a store charge."""
    return f"{transaction_id}:refund"


# ============================================================================
# Mobile store (Google Play Real-Time Developer Notifications)
# ============================================================================


class GooglePlayNormalizer:
    """Adapter for Pub/Sub push deliveries of Google Play RTDN."""

    def __init__(
        self,
        package_name: str,
        pubsub_audience: str = "",
        pubsub_service_account_email: str = "",
        token_verifier: TokenVerifier = _verify_google_oidc_token,
    ) -> None:
        """
        Initialize adapter.

        Args:
            package_name: Expected Android package name
            pubsub_audience: Expected audience of the push OIDC token; when
                empty, push authentication is not enforced
            pubsub_service_account_email: Expected signer of the push token
            token_verifier: Google OIDC token verifier (injectable for tests)
        """
        self.package_name = package_name
        self.pubsub_audience = pubsub_audience
        self.pubsub_service_account_email = pubsub_service_account_email
        self._token_verifier = token_verifier

    @property
    def authenticates_push(self) -> bool:
        return bool(self.pubsub_audience)

    def verify_push_authorization(self, authorization: str | None) -> None:
        """
        Verify the Google-signed bearer token Pub/Sub attaches to each push.

        Blocking (fetches Google's certificates); callers run it in a thread.

        Raises:
            InvalidSignatureError: Missing, invalid or foreign token
        """
        if not self.authenticates_push:
            return

        if not authorization or not authorization.startswith("Bearer "):
            raise InvalidSignatureError(Store.MOBILE, "Missing Pub/Sub bearer token")

        token = authorization[len("Bearer ") :]
        try:
            claims = self._token_verifier(token, self.pubsub_audience)
        except ValueError as exc:
            raise InvalidSignatureError(Store.MOBILE, f"Invalid Pub/Sub token: {exc}") from exc

        if self.pubsub_service_account_email:
            if claims.get("email") != self.pubsub_service_account_email:
                raise InvalidSignatureError(Store.MOBILE, "Pub/Sub token from unexpected signer")
            if not claims.get("email_verified", False):
                raise InvalidSignatureError(Store.MOBILE, "Pub/Sub token email not verified")

    def decode(self, payload: bytes) -> GooglePlayNotification:
        """
        Decode a Pub/Sub push body into a DeveloperNotification.

        Raises:
            MalformedPayloadError: Not a well-formed RTDN for this package
        """
        try:
            envelope = json.loads(payload)
            message = envelope["message"]
            message_id = str(message.get("messageId") or message.get("message_id") or "")
            data = message["data"]
            notification = json.loads(base64.b64decode(data).decode("utf-8"))
        except (json.JSONDecodeError, binascii.Error, UnicodeDecodeError) as exc:
            raise MalformedPayloadError(Store.MOBILE, f"Undecodable push body: {exc}") from exc
        except (KeyError, TypeError, AttributeError) as exc:
            raise MalformedPayloadError(Store.MOBILE, "Push body has no message data") from exc

        if not isinstance(notification, dict):
            raise MalformedPayloadError(Store.MOBILE, "DeveloperNotification is not an object")

        package_name = notification.get("packageName", "")
        if package_name != self.package_name:
            raise MalformedPayloadError(Store.MOBILE, f"Unexpected package name: {package_name}")

        event_time = millis_to_datetime(notification.get("eventTimeMillis"))
        if event_time is None:
            raise MalformedPayloadError(Store.MOBILE, "eventTimeMillis missing")

        is_test = "testNotification" in notification
        sub_notification = notification.get("subscriptionNotification") or {}
        if not isinstance(sub_notification, dict):
            raise MalformedPayloadError(Store.MOBILE, "subscriptionNotification must be an object")
        if not is_test and not sub_notification:
            raise MalformedPayloadError(Store.MOBILE, "No subscriptionNotification")

        try:
            return GooglePlayNotification(
                message_id=message_id,
                package_name=package_name,
                event_time=event_time,
                notification_type=sub_notification.get("notificationType"),
                purchase_token=sub_notification.get("purchaseToken"),
                subscription_id=sub_notification.get("subscriptionId"),
                version=str(notification.get("version", "1.0")),
                is_test=is_test,
                raw=notification,
            )
        except ValueError as exc:
            raise MalformedPayloadError(Store.MOBILE, str(exc)) from exc

    @staticmethod
    def kind_for(notification_type: int | None) -> EventKind | None:
        """Canonical kind of an RTDN code; None for codes that change nothing."""
        if notification_type is None:
            return None
        return GOOGLE_PLAY_EVENT_KINDS.get(notification_type)

    def normalize(
        self,
        notification: GooglePlayNotification,
        purchase: StoreSubscriptionState,
    ) -> NormalizedEvent | None:
        """
        Combine the notification with the authoritative purchase resource.

        The notification only says what happened; expiry, order id and price
        come from `purchases.subscriptions.get`.

        Raises:
            MalformedPayloadError: Notification carries no purchase token
        """
        if notification.is_test:
            logger.info("google_play_test_notification", message_id=notification.message_id)
            return None

        kind = self.kind_for(notification.notification_type)
        if kind is None:
            logger.info(
                "google_play_notification_ignored",
                notification_type=notification.notification_type,
                message_id=notification.message_id,
            )
            return None

        transaction_id = purchase.latest_transaction_id
        amount_minor = None
        currency = None
        if transaction_id and kind in CHARGE_KINDS:
            amount_minor = purchase.amount_minor
            currency = purchase.currency
        elif transaction_id and kind == EventKind.REVOKED:
            transaction_id = refund_transaction_id(transaction_id)
            amount_minor = purchase.amount_minor
            currency = purchase.currency
        else:
            transaction_id = None

        auto_renewing: bool | None = purchase.auto_renewing
        if kind == EventKind.CANCELED:
            auto_renewing = False

        if not notification.purchase_token:
            raise MalformedPayloadError(Store.MOBILE, "purchaseToken required")

        return NormalizedEvent(
            kind=kind,
            store=Store.MOBILE,
            correlation_key=notification.purchase_token,
            event_time=notification.event_time,
            notification_id=notification.message_id,
            notification_type=str(notification.notification_type),
            store_product_id=notification.subscription_id,
            transaction_id=transaction_id,
            original_transaction_id=purchase.original_transaction_id,
            period_end=purchase.expires_at,
            grace_period_end=(
                purchase.grace_period_end or purchase.expires_at
                if kind == EventKind.GRACE_PERIOD_ENTERED
                else None
            ),
            auto_renewing=auto_renewing,
            amount_minor=amount_minor,
            currency=currency,
            is_trial=purchase.is_trial,
            account_token=purchase.account_token,
            environment=purchase.environment,
            raw_fields=notification.raw,
        )


# ============================================================================
# App store (App Store Server Notifications V2)
# ============================================================================


class AppStoreNormalizer:
    """Adapter for App Store Server Notifications V2."""

    def __init__(
        self,
        verifier: AppleJWSVerifier,
        bundle_id: str,
        default_grace_days: int = 16,
    ) -> None:
        """
        Initialize adapter.

        Args:
            verifier: x5c chain verifier with the trusted Apple roots
            bundle_id: Expected app bundle id
            default_grace_days: Grace length when renewal info has no end date
        """
        self.verifier = verifier
        self.bundle_id = bundle_id
        self.default_grace = timedelta(days=default_grace_days)

    def decode(self, signed_payload: str) -> AppleStoreKitWebhookEvent:
        """
        Verify the outer and nested JWS and decode the notification.

        Raises:
            InvalidSignatureError: Any JWS failed chain or signature checks
            MalformedPayloadError: Missing fields or foreign bundle id
        """
        payload = self.verifier.verify(signed_payload)

        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise MalformedPayloadError(Store.APPSTORE, "data is not an object")

        bundle_id = data.get("bundleId")
        if bundle_id is not None and bundle_id != self.bundle_id:
            raise MalformedPayloadError(Store.APPSTORE, f"Unexpected bundle id: {bundle_id}")

        transaction_info = None
        if data.get("signedTransactionInfo"):
            try:
                transaction_info = AppleTransactionInfo.from_payload(
                    self.verifier.verify(data["signedTransactionInfo"])
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise MalformedPayloadError(
                    Store.APPSTORE, f"Incomplete transaction info: {exc}"
                ) from exc

        renewal_info = None
        if data.get("signedRenewalInfo"):
            try:
                renewal_info = AppleRenewalInfo.from_payload(
                    self.verifier.verify(data["signedRenewalInfo"])
                )
            except (TypeError, ValueError) as exc:
                raise MalformedPayloadError(
                    Store.APPSTORE, f"Incomplete renewal info: {exc}"
                ) from exc

        notification_type = payload.get("notificationType")
        notification_uuid = payload.get("notificationUUID")
        signed_date = apple_millis_to_datetime(payload.get("signedDate"))
        if not notification_type or not notification_uuid or signed_date is None:
            raise MalformedPayloadError(
                Store.APPSTORE, "notificationType, notificationUUID and signedDate are required"
            )

        return AppleStoreKitWebhookEvent(
            notification_type=str(notification_type),
            subtype=payload.get("subtype"),  # type: ignore[arg-type]
            notification_uuid=str(notification_uuid),
            version=str(payload.get("version", "2.0")),
            signed_date=signed_date,
            environment=str(data.get("environment", "Production")),
            bundle_id=bundle_id,  # type: ignore[arg-type]
            transaction_info=transaction_info,
            renewal_info=renewal_info,
            raw=payload,
        )

    @staticmethod
    def kind_for(notification_type: str, subtype: str | None) -> EventKind | None:
        """Canonical kind of an App Store notification type/subtype pair."""
        if notification_type == "SUBSCRIBED":
            return EventKind.PURCHASED
        if notification_type == "DID_RENEW":
            return EventKind.RECOVERED if subtype == "BILLING_RECOVERY" else EventKind.RENEWED
        if notification_type == "DID_CHANGE_RENEWAL_STATUS":
            if subtype == "AUTO_RENEW_DISABLED":
                return EventKind.CANCELED
            if subtype == "AUTO_RENEW_ENABLED":
                return EventKind.RENEWAL_RESTORED
            return None
        if notification_type == "DID_FAIL_TO_RENEW":
            return EventKind.GRACE_PERIOD_ENTERED if subtype == "GRACE_PERIOD" else EventKind.EXPIRED
        if notification_type in ("GRACE_PERIOD_EXPIRED", "EXPIRED"):
            return EventKind.EXPIRED
        if notification_type in ("REFUND", "REVOKE"):
            return EventKind.REVOKED
        if notification_type == "RENEWAL_EXTENDED":
            return EventKind.RENEWAL_EXTENDED
        return None

    def normalize(self, event: AppleStoreKitWebhookEvent) -> NormalizedEvent | None:
        """
        Map a decoded notification onto a canonical event.

        Raises:
            MalformedPayloadError: A mapped notification without transaction info
        """
        if event.is_test():
            logger.info("apple_test_notification", notification_uuid=event.notification_uuid)
            return None

        kind = self.kind_for(event.notification_type, event.subtype)
        if kind is None:
            logger.info(
                "apple_notification_ignored",
                notification_type=event.notification_type,
                subtype=event.subtype,
                notification_uuid=event.notification_uuid,
            )
            return None

        tx = event.transaction_info
        if tx is None:
            raise MalformedPayloadError(
                Store.APPSTORE, f"{event.notification_type} without transaction info"
            )

        renewal = event.renewal_info
        period_end = tx.expires_date

        transaction_id: str | None = None
        amount_minor = None
        currency = None
        if kind in CHARGE_KINDS:
            transaction_id = tx.transaction_id
            amount_minor = tx.amount_minor
            currency = tx.currency
        elif event.notification_type == "REFUND":
            transaction_id = refund_transaction_id(tx.transaction_id)
            amount_minor = tx.amount_minor
            currency = tx.currency

        grace_period_end = None
        if kind == EventKind.GRACE_PERIOD_ENTERED:
            grace_period_end = (renewal.grace_period_expires_date if renewal else None) or (
                max(period_end or event.signed_date, event.signed_date) + self.default_grace
            )

        auto_renewing: bool | None = renewal.will_renew() if renewal is not None else None
        if kind == EventKind.CANCELED:
            auto_renewing = False
        elif kind == EventKind.RENEWAL_RESTORED:
            auto_renewing = True

        notification_type = event.notification_type
        if event.subtype:
            notification_type = f"{notification_type}:{event.subtype}"

        return NormalizedEvent(
            kind=kind,
            store=Store.APPSTORE,
            correlation_key=tx.original_transaction_id,
            event_time=event.signed_date,
            notification_id=event.notification_uuid,
            notification_type=notification_type,
            store_product_id=tx.product_id,
            transaction_id=transaction_id,
            original_transaction_id=tx.original_transaction_id,
            period_end=period_end,
            grace_period_end=grace_period_end,
            auto_renewing=auto_renewing,
            amount_minor=amount_minor,
            currency=currency.upper() if currency else None,
            is_trial=tx.is_free_trial,
            account_token=tx.app_account_token,
            environment=event.environment.lower(),
            reason=str(tx.revocation_reason) if tx.revocation_reason is not None else None,
            raw_fields=event.raw,
        )


# ============================================================================
# Web (Stripe)
# ============================================================================


class StripeEventAdapter:
    """Maps verified Stripe events onto payment and lifecycle events."""

    @staticmethod
    def user_id_of(event: StripeWebhookEvent) -> UUID:
        """
        Owning user from the checkout metadata.

        Raises:
            MalformedPayloadError: Missing or invalid user_id metadata
        """
        if not event.user_id:
            raise MalformedPayloadError(Store.WEB, "Missing user_id metadata")
        try:
            return UUID(event.user_id)
        except ValueError as exc:
            raise MalformedPayloadError(Store.WEB, f"Invalid user_id metadata: {event.user_id}") from exc

    @staticmethod
    def payment_event(
        event: StripeWebhookEvent,
        user_id: UUID,
        product: ProductData,
    ) -> PaymentEvent:
        """
        Payment application of a succeeded payment intent.

        The period end is derived from the product billing period.

        Raises:
            MalformedPayloadError: No correlation key can be derived
        """
        correlation_key = event.correlation_key
        if correlation_key is None:
            raise MalformedPayloadError(Store.WEB, "Cannot derive web subscription key")

        return PaymentEvent(
            user_id=user_id,
            product_id=product.product_id,
            store=Store.WEB,
            amount_minor=event.amount_minor,
            currency=event.currency,
            correlation_key=correlation_key,
            store_transaction_id=event.payment_intent_id or event.object_id,
            event_time=event.created,
            store_product_id=product.stripe_price_id,
            original_transaction_id=event.stripe_subscription_id,
            notification_id=event.event_id,
            notification_type=event.event_type,
            raw_fields=event.raw,
        )

    @staticmethod
    def refund_event(event: StripeWebhookEvent, correlation_key: str) -> NormalizedEvent | None:
        """Revoked event of a fully refunded charge; partial refunds keep entitlement."""
        if not event.fully_refunded:
            logger.info(
                "stripe_partial_refund_ignored",
                event_id=event.event_id,
                amount_refunded_minor=event.amount_refunded_minor,
            )
            return None

        return NormalizedEvent(
            kind=EventKind.REVOKED,
            store=Store.WEB,
            correlation_key=correlation_key,
            event_time=event.created,
            notification_id=event.event_id,
            notification_type=event.event_type,
            transaction_id=event.refund_id or refund_transaction_id(event.object_id),
            original_transaction_id=event.payment_intent_id,
            amount_minor=event.amount_refunded_minor,
            currency=event.currency,
            reason="charge_refunded",
            raw_fields=event.raw,
        )


@dataclass(frozen=True)
class Normalizers:
    """Configured adapters, built once at startup."""

    google_play: GooglePlayNormalizer | None = None
    app_store: AppStoreNormalizer | None = None
    stripe: StripeEventAdapter | None = None


def build_normalizers(settings: Settings, apple_verifier: AppleJWSVerifier | None) -> Normalizers:
    """Build the adapters for every configured store."""
    google_play = None
    if settings.google_play_package_name:
        google_play = GooglePlayNormalizer(
            package_name=settings.google_play_package_name,
            pubsub_audience=settings.google_pubsub_audience,
            pubsub_service_account_email=settings.google_pubsub_service_account_email,
        )

    app_store = None
    if settings.apple_bundle_id and apple_verifier is not None:
        app_store = AppStoreNormalizer(
            verifier=apple_verifier,
            bundle_id=settings.apple_bundle_id,
            default_grace_days=settings.default_grace_period_days,
        )

    stripe_adapter = StripeEventAdapter() if settings.stripe_configured else None

    return Normalizers(google_play=google_play, app_store=app_store, stripe=stripe_adapter)


def purchase_event_from_store_state(
    state: StoreSubscriptionState,
    source: EventSource,
    account_token: str | None = None,
) -> NormalizedEvent:
    """
    Purchased event synthesized from a live store validation.

    Used when a purchase is linked by the client or recovered from the
    operator queue, where no notification carried it.

    Raises:
        MalformedPayloadError: Store record has no transaction to account for
    """
    if not state.latest_transaction_id or state.amount_minor is None or not state.currency:
        raise MalformedPayloadError(state.store, "Store record carries no transaction")

    return NormalizedEvent(
        kind=EventKind.PURCHASED,
        store=state.store,
        correlation_key=state.correlation_key,
        event_time=state.checked_at,
        source=source,
        store_product_id=state.store_product_id,
        transaction_id=state.latest_transaction_id,
        original_transaction_id=state.original_transaction_id,
        period_end=state.expires_at,
        grace_period_end=state.grace_period_end,
        auto_renewing=state.auto_renewing,
        amount_minor=state.amount_minor,
        currency=state.currency.upper(),
        is_trial=state.is_trial,
        account_token=account_token or state.account_token,
        environment=state.environment,
    )
