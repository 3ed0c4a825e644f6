"""
Metrics Collection with Prometheus.

Exposes subscription lifecycle, store and worker metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from subledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    STORE = "store"
    EVENT_KIND = "event_kind"
    OUTCOME = "outcome"
    WORKER = "worker"
    TRANSACTION_TYPE = "transaction_type"
    ERROR_TYPE = "error_type"


class SubscriptionMetrics:
    """
    Centralized metrics for the subscription ledger.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Webhook deliveries per store and outcome
    - Lifecycle events applied, stale, duplicate
    - Payment records written
    - Entitlement grants and revocations
    - Store API calls (latency, timeouts, transient errors)
    - Worker passes and per-item results
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "subledger_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "subledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "subledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "subledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "subledger_webhooks_total",
            "Store webhook deliveries by outcome",
            [MetricLabels.STORE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.events_total = Counter(
            "subledger_events_total",
            "Lifecycle events by kind and outcome (applied, stale, duplicate, rejected)",
            [MetricLabels.STORE, MetricLabels.EVENT_KIND, MetricLabels.OUTCOME],
        )

        self.payments_total = Counter(
            "subledger_payments_total",
            "Payment records written",
            [MetricLabels.STORE, MetricLabels.TRANSACTION_TYPE],
        )

        self.payment_amount_minor = Histogram(
            "subledger_payment_amount_minor",
            "Absolute payment amounts in minor units",
            buckets=(99, 299, 499, 999, 1999, 4999, 9999, 19999, 49999),
        )

        self.entitlement_changes_total = Counter(
            "subledger_entitlement_changes_total",
            "Entitlement projection flips",
            ["granted"],
        )

        self.transaction_duration_seconds = Histogram(
            "subledger_transaction_duration_seconds",
            "Atomic transaction duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        self.db_write_verifications_total = Counter(
            "subledger_db_write_verifications_total",
            "Total write verification checks",
            ["success"],
        )

        # ====================================================================
        # Store API Metrics
        # ====================================================================
        self.store_calls_total = Counter(
            "subledger_store_calls_total",
            "Store API call attempts by outcome",
            [MetricLabels.STORE, MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.store_call_duration_seconds = Histogram(
            "subledger_store_call_duration_seconds",
            "Store API call attempt duration in seconds",
            [MetricLabels.STORE, MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Worker Metrics
        # ====================================================================
        self.worker_runs_total = Counter(
            "subledger_worker_runs_total",
            "Worker passes by outcome",
            [MetricLabels.WORKER, MetricLabels.OUTCOME],
        )

        self.worker_items_total = Counter(
            "subledger_worker_items_total",
            "Worker per-item results (unchanged, updated, expired, error, resolved)",
            [MetricLabels.WORKER, MetricLabels.OUTCOME],
        )

        self.worker_run_duration_seconds = Histogram(
            "subledger_worker_run_duration_seconds",
            "Worker pass duration in seconds",
            [MetricLabels.WORKER],
            buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0),
        )

        self.worker_last_success_timestamp = Gauge(
            "subledger_worker_last_success_timestamp",
            "Unix time of the last successful worker pass",
            [MetricLabels.WORKER],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "subledger_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_webhook(self, store: str, outcome: str) -> None:
        """Record one webhook delivery outcome."""
        self.webhooks_total.labels(store=store, outcome=outcome).inc()

    def record_event(self, store: str, event_kind: str, outcome: str) -> None:
        """Record a lifecycle event outcome."""
        self.events_total.labels(store=store, event_kind=event_kind, outcome=outcome).inc()

    def record_payment(self, store: str, transaction_type: str, amount_minor: int) -> None:
        """Record a payment record insert."""
        self.payments_total.labels(store=store, transaction_type=transaction_type).inc()
        self.payment_amount_minor.observe(abs(amount_minor))

    def record_entitlement_change(self, granted: bool) -> None:
        """Record an entitlement projection flip."""
        self.entitlement_changes_total.labels(granted=str(granted)).inc()

    def record_transaction(self, operation: str, duration: float) -> None:
        """Record atomic transaction duration."""
        self.transaction_duration_seconds.labels(operation=operation).observe(duration)

    def record_write_verification(self, success: bool) -> None:
        """Record a post-flush write verification."""
        self.db_write_verifications_total.labels(success=str(success)).inc()

    def record_store_call(self, store: str, operation: str, outcome: str, duration: float) -> None:
        """Record one store API attempt."""
        self.store_calls_total.labels(store=store, operation=operation, outcome=outcome).inc()
        self.store_call_duration_seconds.labels(store=store, operation=operation).observe(duration)

    def record_worker_run(self, worker: str, outcome: str, duration: float) -> None:
        """Record a completed worker pass."""
        self.worker_runs_total.labels(worker=worker, outcome=outcome).inc()
        self.worker_run_duration_seconds.labels(worker=worker).observe(duration)
        if outcome == "success":
            self.worker_last_success_timestamp.labels(worker=worker).set_to_current_time()

    def record_worker_item(self, worker: str, outcome: str) -> None:
        """Record one worker item result."""
        self.worker_items_total.labels(worker=worker, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = SubscriptionMetrics()
