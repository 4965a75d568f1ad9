"""
Correlation Module

Explicitly-passed correlation context for HTTP, outbox and Kafka flows.
"""

from .context import (
    CORRELATION_ID_HEADER,
    LEGACY_CORRELATION_ID_HEADER,
    SOURCE_SERVICE_HEADER,
    MAX_CORRELATION_ID_LENGTH,
    CorrelationContext,
    generate_correlation_id,
    validate_correlation_id,
)

__all__ = [
    "CORRELATION_ID_HEADER",
    "LEGACY_CORRELATION_ID_HEADER",
    "SOURCE_SERVICE_HEADER",
    "MAX_CORRELATION_ID_LENGTH",
    "CorrelationContext",
    "generate_correlation_id",
    "validate_correlation_id",
]
