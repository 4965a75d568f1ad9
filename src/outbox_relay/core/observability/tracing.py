"""
OpenTelemetry Tracing

Spans for outbox publishes and consumed messages. The W3C traceparent
travels in Kafka message headers next to the correlation id, so a
consumer span continues the producer's trace.
"""

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Sequence, Tuple

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import extract, inject, set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, SpanKind, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

if TYPE_CHECKING:
    from ..correlation import CorrelationContext

logger = logging.getLogger(__name__)

TRACER_NAME = "outbox-relay"

MessageHeaders = Optional[Sequence[Tuple[str, Any]]]


def init_tracing(
    service_name: str = "outbox-relay",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False
) -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service
        service_version: Version of the service
        otlp_endpoint: OTLP exporter endpoint (e.g., "http://localhost:4317")
        console_export: Enable console export for debugging

    Returns:
        Configured tracer
    """
    provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
    }))

    if otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        )
        logger.info(f"OTel tracing: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTel tracing: Console exporter enabled")

    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())

    logger.info(f"OTel tracing initialized: {service_name} v{service_version}")
    return trace.get_tracer(TRACER_NAME, service_version)


def get_current_span() -> Span:
    return trace.get_current_span()


def get_trace_id() -> Optional[str]:
    """Get the current trace ID as hex string."""
    span_context = get_current_span().get_span_context()
    if span_context.is_valid:
        return format(span_context.trace_id, '032x')
    return None


@contextmanager
def create_span(
    name: str,
    ctx: "CorrelationContext",
    attributes: Optional[Dict[str, Any]] = None,
    kind: SpanKind = SpanKind.INTERNAL,
    parent: Optional[Context] = None,
) -> Iterator[Span]:
    """
    Start a span tagged with the operation's correlation id.

    Usage:
        with create_span(f"{topic} publish", ctx, {"messaging.destination.name": topic},
                         kind=SpanKind.PRODUCER) as span:
            ...
    """
    span_attributes = {
        "correlation_id": ctx.correlation_id,
        "source_service": ctx.source_service,
    }
    span_attributes.update(attributes or {})

    with trace.get_tracer(TRACER_NAME).start_as_current_span(
        name,
        context=parent,
        kind=kind,
        attributes=span_attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


def trace_headers() -> List[Tuple[str, bytes]]:
    """Kafka headers carrying the current trace context (empty when not tracing)."""
    carrier: Dict[str, str] = {}
    inject(carrier)
    return [(key, value.encode("utf-8")) for key, value in carrier.items()]


def context_from_headers(headers: MessageHeaders) -> Context:
    """Parent context from a consumed message's headers."""
    carrier: Dict[str, str] = {}
    for key, value in headers or []:
        if isinstance(value, (bytes, bytearray)):
            try:
                value = bytes(value).decode("utf-8")
            except UnicodeDecodeError:
                continue
        if value is not None:
            carrier[key.lower()] = str(value)
    return extract(carrier)
