"""
Correlation Middleware

Establishes the Correlation Context for every HTTP request.

Headers:
- X-Correlation-ID: adopted when present and valid, generated otherwise,
  and always echoed on the response.

Handlers receive the context explicitly through the
get_correlation_context dependency and pass it on to the outbox writer.
"""

import os

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ...core.correlation import CORRELATION_ID_HEADER, CorrelationContext


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Middleware that extracts or generates the correlation id.

    Usage:
        app.add_middleware(CorrelationMiddleware, source_service="contact-service")

        @app.post("/contacts")
        async def create_contact(ctx: CorrelationContext = Depends(get_correlation_context)):
            ...
    """

    def __init__(self, app: ASGIApp, source_service: str = "contact-service"):
        super().__init__(app)
        self.source_service = source_service

    async def dispatch(self, request: Request, call_next):
        ctx = CorrelationContext.from_http_headers(request.headers, self.source_service)

        request.state.correlation = ctx
        request.state.correlation_id = ctx.correlation_id

        response = await call_next(request)

        response.headers[CORRELATION_ID_HEADER] = ctx.correlation_id
        return response


def get_correlation_context(request: Request) -> CorrelationContext:
    """
    FastAPI dependency returning the request's Correlation Context.

    Falls back to a fresh context when the middleware is not installed.
    """
    ctx = getattr(request.state, "correlation", None)
    if ctx is None:
        ctx = CorrelationContext.from_http_headers(
            request.headers, os.getenv("SERVICE_NAME", "contact-service")
        )
        request.state.correlation = ctx
    return ctx
