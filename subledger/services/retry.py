"""
Store API call policy - timeout, retry with exponential backoff.

NO DICTIONARIES - All data uses strongly typed models.

Every outbound store call goes through `call_with_retries`. A timeout is a
retryable failure, never "store said no"; exhausting the attempts surfaces
`StoreUnavailableError`.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from structlog import get_logger

from subledger.config import Settings
from subledger.exceptions import StoreTransientError, StoreUnavailableError
from subledger.models.api import Store
from subledger.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and backoff applied to each store call."""

    timeout_seconds: float = 15.0
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0

    def __post_init__(self) -> None:
        """Validate policy bounds."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            timeout_seconds=settings.store_api_timeout_seconds,
            max_retries=settings.store_api_max_retries,
            backoff_base_seconds=settings.store_api_backoff_base_seconds,
            backoff_max_seconds=settings.store_api_backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff: base, 2*base, 4*base ... capped."""
        return min(self.backoff_base_seconds * (2 ** max(attempt - 1, 0)), self.backoff_max_seconds)


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    store: Store,
    name: str,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run one store call with a per-attempt timeout and retries.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        store: Store being called (for errors and metrics)
        name: Operation name (for errors and metrics)
        policy: Timeout and backoff policy
        sleep: Backoff sleeper (injectable for tests)

    Raises:
        StoreUnavailableError: Every attempt timed out or failed transiently
        StoreRejectedError: Propagated unchanged from the operation
    """
    attempts = policy.max_retries + 1
    last_error = ""

    for attempt in range(1, attempts + 1):
        start = time.time()
        try:
            result = await asyncio.wait_for(operation(), timeout=policy.timeout_seconds)
            metrics.record_store_call(store.value, name, "success", time.time() - start)
            return result
        except TimeoutError:
            last_error = f"timed out after {policy.timeout_seconds}s"
            metrics.record_store_call(store.value, name, "timeout", time.time() - start)
        except StoreTransientError as exc:
            last_error = exc.message
            metrics.record_store_call(store.value, name, "transient_error", time.time() - start)

        if attempt < attempts:
            delay = policy.delay_for(attempt)
            logger.warning(
                "store_call_retrying",
                store=store.value,
                operation=name,
                attempt=attempt,
                delay_seconds=delay,
                error=last_error,
            )
            await sleep(delay)

    logger.error(
        "store_call_failed",
        store=store.value,
        operation=name,
        attempts=attempts,
        error=last_error,
    )
    raise StoreUnavailableError(store, name, last_error, attempts=attempts)
