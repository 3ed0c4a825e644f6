"""
Tests for exception classes and their HTTP mapping.
"""

from uuid import uuid4

import pytest

from subledger.api.errors import http_error, status_for
from subledger.exceptions import (
    AuthenticationError,
    CorrelationConflictError,
    DuplicateNotificationError,
    InvalidSignatureError,
    InvalidTransitionError,
    MalformedPayloadError,
    ProductNotFoundError,
    ReferentialMismatchError,
    StoreNotConfiguredError,
    StoreRejectedError,
    StoreUnavailableError,
    SubscriptionLedgerError,
    SubscriptionNotFoundError,
    TransactionAbortedError,
    UnsupportedStoreOperationError,
    UserNotFoundError,
)
from subledger.models.api import EventKind, Store, SubscriptionStatus


class TestExceptionMessages:
    """Tests for exception attributes and messages."""

    def test_all_errors_share_base(self):
        """Test that domain errors derive from SubscriptionLedgerError."""
        assert issubclass(ProductNotFoundError, ReferentialMismatchError)
        assert issubclass(CorrelationConflictError, ReferentialMismatchError)
        assert issubclass(StoreUnavailableError, SubscriptionLedgerError)

    def test_product_not_found_with_store(self):
        """Test the message names the store when known."""
        exc = ProductNotFoundError("sku.unknown", Store.MOBILE)

        assert exc.product_ref == "sku.unknown"
        assert "mobile" in str(exc)

    def test_subscription_not_found(self):
        """Test the message includes the store-scoped reference."""
        exc = SubscriptionNotFoundError("token-1", Store.APPSTORE)

        assert str(exc) == "Subscription not found: appstore/token-1"

    def test_invalid_transition(self):
        """Test that the transition error keeps status and kind."""
        exc = InvalidTransitionError(SubscriptionStatus.REFUNDED, EventKind.RENEWED)

        assert exc.current == SubscriptionStatus.REFUNDED
        assert exc.kind == EventKind.RENEWED
        assert "renewed" in str(exc)

    def test_retryable_errors(self):
        """Test that unavailable and aborted errors are marked retryable."""
        assert StoreUnavailableError(Store.WEB, "x", "y").retryable is True
        assert TransactionAbortedError("x", "y").retryable is True


class TestStatusFor:
    """Tests for status_for."""

    @pytest.mark.parametrize(
        "exc,expected",
        [
            (InvalidSignatureError(Store.APPSTORE, "bad chain"), 401),
            (AuthenticationError("missing header"), 401),
            (MalformedPayloadError(Store.MOBILE, "no data"), 400),
            (ProductNotFoundError("sku"), 404),
            (UserNotFoundError("u"), 404),
            (SubscriptionNotFoundError("s"), 404),
            (CorrelationConflictError(Store.MOBILE, "token", uuid4()), 409),
            (InvalidTransitionError(SubscriptionStatus.EXPIRED, EventKind.CANCELED), 409),
            (DuplicateNotificationError("msg-1"), 409),
            (UnsupportedStoreOperationError(Store.APPSTORE, "cancel"), 422),
            (StoreUnavailableError(Store.MOBILE, "get", "timeout", attempts=4), 503),
            (StoreNotConfiguredError(Store.WEB), 503),
            (TransactionAbortedError("apply", "deadlock"), 500),
        ],
    )
    def test_mapping(self, exc, expected):
        """Test the status of each domain error."""
        assert status_for(exc) == expected

    @pytest.mark.parametrize("code", [400, 403, 404, 409, 410])
    def test_store_rejected_purchase(self, code):
        """Test that a store refusing the purchase is unprocessable."""
        assert status_for(StoreRejectedError(Store.MOBILE, "get", code, "no")) == 422

    @pytest.mark.parametrize("code", [401, 429, 500])
    def test_store_rejected_us(self, code):
        """Test that a store refusing our credentials is a bad gateway."""
        assert status_for(StoreRejectedError(Store.MOBILE, "get", code, "no")) == 502


class TestHttpError:
    """Tests for http_error."""

    def test_client_error_detail_is_kept(self):
        """Test that 4xx responses carry the error message."""
        exc = http_error(ProductNotFoundError("sku"))

        assert exc.status_code == 404
        assert exc.detail == "Product not found: sku"

    def test_unavailable_detail_is_kept(self):
        """Test that 503 responses explain the outage."""
        exc = http_error(StoreNotConfiguredError(Store.APPSTORE))

        assert exc.status_code == 503
        assert "appstore" in exc.detail

    def test_internal_error_detail_is_hidden(self):
        """Test that 500 responses do not leak internals."""
        exc = http_error(TransactionAbortedError("apply", "connection reset by peer"))

        assert exc.status_code == 500
        assert exc.detail == "Processing failed, retry later"
