"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID

from subledger.models.api import EventKind, Store, SubscriptionStatus


class SubscriptionLedgerError(Exception):
    """Base exception for all subscription ledger errors."""

    pass


# ============================================================================
# Normalizer errors - rejected before any state change
# ============================================================================


class InvalidSignatureError(SubscriptionLedgerError):
    """Raised when a store payload signature or certificate chain fails verification."""

    def __init__(self, store: Store, message: str) -> None:
        self.store = store
        self.message = message
        super().__init__(f"Invalid {store.value} signature: {message}")


class MalformedPayloadError(SubscriptionLedgerError):
    """Raised when a store payload cannot be decoded or is structurally incomplete."""

    def __init__(self, store: Store, message: str) -> None:
        self.store = store
        self.message = message
        super().__init__(f"Malformed {store.value} payload: {message}")


class DuplicateNotificationError(SubscriptionLedgerError):
    """Raised when a store notification id has already been logged."""

    def __init__(self, notification_id: str) -> None:
        self.notification_id = notification_id
        super().__init__(f"Notification already processed: {notification_id}")


# ============================================================================
# Referential errors - surfaced to the operator queue
# ============================================================================


class ReferentialMismatchError(SubscriptionLedgerError):
    """Base for events that reference something this service does not know."""

    pass


class ProductNotFoundError(ReferentialMismatchError):
    """Raised when a catalog or store product id does not resolve."""

    def __init__(self, product_ref: str, store: Store | None = None) -> None:
        self.product_ref = product_ref
        self.store = store
        where = f" for store {store.value}" if store else ""
        super().__init__(f"Product not found{where}: {product_ref}")


class UserNotFoundError(ReferentialMismatchError):
    """Raised when the owning user does not exist or cannot be linked."""

    def __init__(self, user_ref: str) -> None:
        self.user_ref = user_ref
        super().__init__(f"User not found: {user_ref}")


class SubscriptionNotFoundError(ReferentialMismatchError):
    """Raised when a lifecycle event references an unknown subscription."""

    def __init__(self, subscription_ref: str, store: Store | None = None) -> None:
        self.subscription_ref = subscription_ref
        self.store = store
        where = f"{store.value}/" if store else ""
        super().__init__(f"Subscription not found: {where}{subscription_ref}")


class CorrelationConflictError(ReferentialMismatchError):
    """Raised when a store correlation key is already bound to another user."""

    def __init__(self, store: Store, correlation_key: str, owner_id: UUID) -> None:
        self.store = store
        self.correlation_key = correlation_key
        self.owner_id = owner_id
        super().__init__(
            f"Correlation key {store.value}/{correlation_key[:16]} belongs to user {owner_id}"
        )


# ============================================================================
# Store client errors
# ============================================================================


class StoreUnavailableError(SubscriptionLedgerError):
    """Raised when a store API keeps failing transiently (timeouts, 5xx, 429)."""

    retryable = True

    def __init__(self, store: Store, operation: str, message: str, attempts: int = 1) -> None:
        self.store = store
        self.operation = operation
        self.message = message
        self.attempts = attempts
        super().__init__(
            f"{store.value} unavailable during {operation} after {attempts} attempt(s): {message}"
        )


class StoreTransientError(SubscriptionLedgerError):
    """Raised by store clients for one failed attempt that is worth retrying."""

    def __init__(self, store: Store, operation: str, message: str) -> None:
        self.store = store
        self.operation = operation
        self.message = message
        super().__init__(f"{store.value} transient failure during {operation}: {message}")


class StoreRejectedError(SubscriptionLedgerError):
    """Raised when a store answers definitively (unknown token, bad credentials)."""

    def __init__(self, store: Store, operation: str, status_code: int, message: str) -> None:
        self.store = store
        self.operation = operation
        self.status_code = status_code
        self.message = message
        super().__init__(f"{store.value} rejected {operation} ({status_code}): {message}")


class UnsupportedStoreOperationError(SubscriptionLedgerError):
    """Raised when a store offers no developer API for an operation."""

    def __init__(self, store: Store, operation: str) -> None:
        self.store = store
        self.operation = operation
        super().__init__(f"{store.value} does not support {operation}")


class StoreNotConfiguredError(SubscriptionLedgerError):
    """Raised when no billing client was configured for a store."""

    def __init__(self, store: Store) -> None:
        self.store = store
        super().__init__(f"No billing client configured for {store.value}")


# ============================================================================
# Transaction processor errors
# ============================================================================


class InvalidTransitionError(SubscriptionLedgerError):
    """Raised when an event is not allowed from the subscription's current status."""

    def __init__(self, current: SubscriptionStatus, kind: EventKind) -> None:
        self.current = current
        self.kind = kind
        super().__init__(f"Event {kind.value} not allowed from status {current.value}")


class ConstraintViolationError(SubscriptionLedgerError):
    """Raised when an idempotency constraint fires; callers treat it as a no-op."""

    def __init__(self, constraint: str) -> None:
        self.constraint = constraint
        super().__init__(f"Constraint violated: {constraint}")


class TransactionAbortedError(SubscriptionLedgerError):
    """Raised when the atomic unit was rolled back; safe to retry the whole operation."""

    retryable = True

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Transaction aborted during {operation}: {message}")


class WriteVerificationError(SubscriptionLedgerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


# ============================================================================
# API errors
# ============================================================================


class AuthenticationError(SubscriptionLedgerError):
    """Raised when the caller principal or admin key is missing or invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
