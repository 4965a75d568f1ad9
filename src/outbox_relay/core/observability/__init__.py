"""
Observability Module

Provides distributed tracing, metrics collection, and structured logging.
"""

from .tracing import (
    init_tracing,
    get_current_span,
    get_trace_id,
    create_span,
    trace_headers,
    context_from_headers,
)
from .metrics import (
    init_metrics,
    record_counter,
    record_histogram,
    reset_metrics,
    OUTBOX_PUBLISHED,
    OUTBOX_FAILED,
    OUTBOX_DEAD_LETTERED,
    OUTBOX_CLEANUP_DELETED,
    OUTBOX_PUBLISH_DURATION,
    OUTBOX_TICK_DURATION,
)
from .logging import configure_logging, StructuredFormatter

__all__ = [
    # Tracing
    "init_tracing",
    "get_current_span",
    "get_trace_id",
    "create_span",
    "trace_headers",
    "context_from_headers",
    # Metrics
    "init_metrics",
    "record_counter",
    "record_histogram",
    "reset_metrics",
    "OUTBOX_PUBLISHED",
    "OUTBOX_FAILED",
    "OUTBOX_DEAD_LETTERED",
    "OUTBOX_CLEANUP_DELETED",
    "OUTBOX_PUBLISH_DURATION",
    "OUTBOX_TICK_DURATION",
    # Logging
    "configure_logging",
    "StructuredFormatter",
]
