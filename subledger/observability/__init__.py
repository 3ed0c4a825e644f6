"""
Observability module - Logging, Metrics, and Tracing.
"""

from subledger.observability.logging import get_logger, log_context, setup_logging
from subledger.observability.metrics import metrics
from subledger.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
