"""
HTTP Error Mapping - Domain exceptions to HTTP responses.

Webhook senders retry on any non-2xx answer, so only failures a retry can
fix map to 5xx.
"""

from fastapi import HTTPException, status

from subledger.exceptions import (
    AuthenticationError,
    CorrelationConflictError,
    DuplicateNotificationError,
    InvalidSignatureError,
    InvalidTransitionError,
    MalformedPayloadError,
    ReferentialMismatchError,
    StoreNotConfiguredError,
    StoreRejectedError,
    StoreUnavailableError,
    SubscriptionLedgerError,
    UnsupportedStoreOperationError,
)

PURCHASE_REJECTION_CODES = frozenset({400, 403, 404, 409, 410})

_STATUS_BY_ERROR: tuple[tuple[type[SubscriptionLedgerError], int], ...] = (
    (InvalidSignatureError, status.HTTP_401_UNAUTHORIZED),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (MalformedPayloadError, status.HTTP_400_BAD_REQUEST),
    (CorrelationConflictError, status.HTTP_409_CONFLICT),
    (ReferentialMismatchError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (DuplicateNotificationError, status.HTTP_409_CONFLICT),
    (UnsupportedStoreOperationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StoreNotConfiguredError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: SubscriptionLedgerError) -> int:
    """HTTP status of a domain error; unknown errors are 500."""
    if isinstance(exc, StoreRejectedError):
        # The store refused this purchase, or refused us (credentials, quota)
        if exc.status_code in PURCHASE_REJECTION_CODES:
            return status.HTTP_422_UNPROCESSABLE_ENTITY
        return status.HTTP_502_BAD_GATEWAY
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def http_error(exc: SubscriptionLedgerError) -> HTTPException:
    """HTTPException for a domain error, hiding internals of 500s."""
    code = status_for(exc)
    detail = str(exc) if code < 500 or code == 503 else "Processing failed, retry later"
    return HTTPException(status_code=code, detail=detail)
