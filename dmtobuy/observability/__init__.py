"""
Observability module - Logging, Metrics, and Tracing.
"""

from dmtobuy.observability.logging import get_logger, log_context, setup_logging
from dmtobuy.observability.metrics import metrics
from dmtobuy.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
