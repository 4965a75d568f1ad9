"""
API Middleware

- CorrelationMiddleware: establishes the Correlation Context per request
"""

from .correlation import CorrelationMiddleware, get_correlation_context

__all__ = [
    "CorrelationMiddleware",
    "get_correlation_context",
]
