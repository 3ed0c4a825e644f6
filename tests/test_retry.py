"""
Tests for the store call policy.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from subledger.exceptions import StoreRejectedError, StoreTransientError, StoreUnavailableError
from subledger.models.api import Store
from subledger.services.retry import RetryPolicy, call_with_retries


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(
        timeout_seconds=0.05,
        max_retries=2,
        backoff_base_seconds=0.5,
        backoff_max_seconds=1.5,
    )


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_delay_doubles_and_caps(self, policy):
        """Test exponential backoff with a ceiling."""
        assert policy.delay_for(1) == 0.5
        assert policy.delay_for(2) == 1.0
        assert policy.delay_for(3) == 1.5
        assert policy.delay_for(10) == 1.5

    def test_rejects_non_positive_timeout(self):
        """Test policy validation."""
        with pytest.raises(ValueError, match="timeout_seconds"):
            RetryPolicy(timeout_seconds=0)

    def test_rejects_negative_retries(self):
        """Test policy validation."""
        with pytest.raises(ValueError, match="max_retries"):
            RetryPolicy(max_retries=-1)


class TestCallWithRetries:
    """Tests for call_with_retries."""

    async def test_success_first_attempt(self, policy):
        """Test that a successful call is returned without sleeping."""
        operation = AsyncMock(return_value="ok")
        sleep = AsyncMock()

        result = await call_with_retries(
            operation, store=Store.MOBILE, name="purchases.get", policy=policy, sleep=sleep
        )

        assert result == "ok"
        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_transient_failure_then_success(self, policy):
        """Test that a transient failure is retried after a backoff."""
        operation = AsyncMock(
            side_effect=[StoreTransientError(Store.MOBILE, "purchases.get", "503"), "ok"]
        )
        sleep = AsyncMock()

        result = await call_with_retries(
            operation, store=Store.MOBILE, name="purchases.get", policy=policy, sleep=sleep
        )

        assert result == "ok"
        assert operation.await_count == 2
        sleep.assert_awaited_once_with(0.5)

    async def test_timeout_is_retryable(self, policy):
        """Test that a hung call times out and is retried."""
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "ok"

        result = await call_with_retries(
            operation, store=Store.APPSTORE, name="status", policy=policy, sleep=AsyncMock()
        )

        assert result == "ok"
        assert calls == 2

    async def test_exhaustion_raises_unavailable(self, policy):
        """Test that running out of attempts surfaces StoreUnavailableError."""
        operation = AsyncMock(side_effect=StoreTransientError(Store.WEB, "refunds.create", "boom"))
        sleep = AsyncMock()

        with pytest.raises(StoreUnavailableError) as exc_info:
            await call_with_retries(
                operation, store=Store.WEB, name="refunds.create", policy=policy, sleep=sleep
            )

        assert exc_info.value.attempts == 3
        assert exc_info.value.operation == "refunds.create"
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    async def test_rejection_is_not_retried(self, policy):
        """Test that a definitive store answer propagates immediately."""
        operation = AsyncMock(
            side_effect=StoreRejectedError(Store.MOBILE, "purchases.get", 410, "gone")
        )
        sleep = AsyncMock()

        with pytest.raises(StoreRejectedError):
            await call_with_retries(
                operation, store=Store.MOBILE, name="purchases.get", policy=policy, sleep=sleep
            )

        operation.assert_awaited_once()
        sleep.assert_not_awaited()
