"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from taskqueue.observability.logging import (
    bind_context,
    clear_context,
    get_logger,
    job_log_context,
    setup_logging,
)
from taskqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from taskqueue.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "job_log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
