"""
Event System

Kafka publishing and consumption of outbox events.

Usage:
    from outbox_relay.core.events import KafkaEventPublisher, TopicRouter

    publisher = KafkaEventPublisher(KafkaSettings.from_env())
    receipt = await publisher.publish(event, ctx)
"""

from .taxonomy import (
    EventCategory,
    ContactEventType,
    ReportEventType,
    NotificationEventType,
    ALL_EVENT_TYPES,
    validate_event_type,
    get_category,
)

from .models import (
    SCHEMA_VERSION,
    MessageEnvelope,
    PublishReceipt,
)

from .publisher import (
    KafkaEventPublisher,
    TopicRouter,
    classify_kafka_error,
    PERMANENT_ERROR_CODES,
)

from .consumer import (
    EventConsumer,
    ConsumeOutcome,
)

__all__ = [
    # Taxonomy
    "EventCategory",
    "ContactEventType",
    "ReportEventType",
    "NotificationEventType",
    "ALL_EVENT_TYPES",
    "validate_event_type",
    "get_category",
    # Models
    "SCHEMA_VERSION",
    "MessageEnvelope",
    "PublishReceipt",
    # Publishing
    "KafkaEventPublisher",
    "TopicRouter",
    "classify_kafka_error",
    "PERMANENT_ERROR_CODES",
    # Consuming
    "EventConsumer",
    "ConsumeOutcome",
]
