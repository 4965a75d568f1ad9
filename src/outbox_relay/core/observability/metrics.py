"""
OpenTelemetry Metrics

Outbox relay counters and histograms. Recording is a no-op until
init_metrics() has run.
"""

import logging
from typing import Optional, Dict, Any

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME

logger = logging.getLogger(__name__)

_meter: Optional[metrics.Meter] = None

_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}

OUTBOX_PUBLISHED = "outbox_published_total"
OUTBOX_FAILED = "outbox_failed_total"
OUTBOX_DEAD_LETTERED = "outbox_dead_lettered_total"
OUTBOX_CLEANUP_DELETED = "outbox_cleanup_deleted_total"
OUTBOX_PUBLISH_DURATION = "outbox_publish_duration_seconds"
OUTBOX_TICK_DURATION = "outbox_tick_duration_seconds"


def init_metrics(
    service_name: str = "outbox-relay",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000,
    readers: Optional[list] = None,
) -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint
        console_export: Enable console export for debugging
        export_interval_ms: Export interval in milliseconds
        readers: Extra metric readers (e.g. an InMemoryMetricReader in tests)

    Returns:
        Configured meter
    """
    global _meter

    metric_readers = list(readers or [])

    if otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True)
        metric_readers.append(PeriodicExportingMetricReader(
            otlp_exporter,
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"OTel metrics: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        metric_readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))
        logger.info("OTel metrics: Console exporter enabled")

    resource = Resource.create({SERVICE_NAME: service_name})

    provider = MeterProvider(resource=resource, metric_readers=metric_readers)
    metrics.set_meter_provider(provider)

    # Instruments are bound to this provider, not the global one, so
    # re-initialisation in tests picks up the new readers.
    _meter = provider.get_meter(service_name)

    _init_outbox_metrics(_meter)

    logger.info(f"OTel metrics initialized: {service_name}")

    return _meter


def _init_outbox_metrics(meter: metrics.Meter):
    """Create the outbox relay instruments."""

    _counters[OUTBOX_PUBLISHED] = meter.create_counter(
        OUTBOX_PUBLISHED,
        description="Outbox events acknowledged by the broker",
        unit="1"
    )

    _counters[OUTBOX_FAILED] = meter.create_counter(
        OUTBOX_FAILED,
        description="Outbox publish attempts that failed and were scheduled for retry",
        unit="1"
    )

    _counters[OUTBOX_DEAD_LETTERED] = meter.create_counter(
        OUTBOX_DEAD_LETTERED,
        description="Outbox events moved to dead letter",
        unit="1"
    )

    _counters[OUTBOX_CLEANUP_DELETED] = meter.create_counter(
        OUTBOX_CLEANUP_DELETED,
        description="Published outbox events removed by retention cleanup",
        unit="1"
    )

    _histograms[OUTBOX_PUBLISH_DURATION] = meter.create_histogram(
        OUTBOX_PUBLISH_DURATION,
        description="Time from produce to broker acknowledgement",
        unit="s"
    )

    _histograms[OUTBOX_TICK_DURATION] = meter.create_histogram(
        OUTBOX_TICK_DURATION,
        description="Duration of one processor tick",
        unit="s"
    )


def reset_metrics():
    """Drop registered instruments (for testing)."""
    global _meter
    _meter = None
    _counters.clear()
    _histograms.clear()


def record_counter(
    name: str,
    value: int = 1,
    attributes: Dict[str, Any] = None
):
    """Record a counter metric."""
    if name in _counters:
        _counters[name].add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Dict[str, Any] = None
):
    """Record a histogram metric."""
    if name in _histograms:
        _histograms[name].record(value, attributes or {})
