"""
Event Publisher

Publishes outbox records to Kafka through a confluent-kafka Producer.

Each publish produces exactly one message and waits for the broker
acknowledgement before returning. The blocking produce/flush cycle runs
in a worker thread so the event loop stays responsive.

Routing:
- Contact* events      -> contact topic
- Report* events       -> report topic
- Notification* events -> notification topic
- anything else        -> default topic
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from confluent_kafka import KafkaError, KafkaException, Producer
from opentelemetry.trace import SpanKind

from ..config import KafkaSettings, TopicSettings
from ..correlation import CorrelationContext
from ..observability import (
    OUTBOX_PUBLISH_DURATION,
    create_span,
    record_histogram,
    trace_headers,
)
from ..outbox.errors import (
    PermanentPublishError,
    PublishError,
    SerializationError,
    TransientPublishError,
)
from ..outbox.models import OutboxEvent
from .models import MessageEnvelope, PublishReceipt
from .taxonomy import EventCategory, get_category

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"

# Broker/client error codes that no amount of retrying will fix
_PERMANENT_ERROR_NAMES = (
    "MSG_SIZE_TOO_LARGE",
    "RECORD_LIST_TOO_LARGE",
    "INVALID_RECORD",
    "_INVALID_ARG",
)
PERMANENT_ERROR_CODES = frozenset(
    getattr(KafkaError, name) for name in _PERMANENT_ERROR_NAMES if hasattr(KafkaError, name)
)

Headers = List[Tuple[str, bytes]]


def classify_kafka_error(err: KafkaError) -> PublishError:
    """
    Map a librdkafka error to the outbox failure taxonomy.

    Size and validity errors are permanent; timeouts, transport and
    leader errors and everything unrecognised are transient.
    """
    code = err.code()
    name = err.name() if hasattr(err, "name") else str(code)
    message = err.str() if hasattr(err, "str") else str(err)

    if code in PERMANENT_ERROR_CODES:
        return PermanentPublishError(message, code=name)
    return TransientPublishError(message, code=name)


class TopicRouter:
    """Resolves the destination topic for an event type."""

    def __init__(self, topics: Optional[TopicSettings] = None):
        self.topics = topics or TopicSettings()
        self._by_category: Dict[EventCategory, str] = {
            EventCategory.CONTACT: self.topics.contact_events,
            EventCategory.REPORT: self.topics.report_events,
            EventCategory.NOTIFICATION: self.topics.notification_events,
        }

    def topic_for(self, event_type: str) -> str:
        if event_type in self.topics.overrides:
            return self.topics.overrides[event_type]
        category = get_category(event_type)
        if category is None:
            return self.topics.default
        return self._by_category[category]


class KafkaEventPublisher:
    """
    Publishes outbox records to Kafka with broker acknowledgement.

    Usage:
        publisher = KafkaEventPublisher(KafkaSettings.from_env())
        receipt = await publisher.publish(event, CorrelationContext.for_event(event, "contact-service"))
        ...
        await publisher.close()

    Raises from publish():
        PermanentPublishError: the message can never be delivered as-is
        TransientPublishError: delivery may succeed on a later attempt
    """

    def __init__(
        self,
        settings: Optional[KafkaSettings] = None,
        router: Optional[TopicRouter] = None,
        producer: Optional[Producer] = None,
        producer_factory: Optional[Callable[[], Producer]] = None,
    ):
        self.settings = settings or KafkaSettings()
        self.router = router or TopicRouter(self.settings.topics)
        self._producer_factory = producer_factory or self._default_factory
        self._producer = producer if producer is not None else self._producer_factory()
        self._needs_rebuild = False
        self._closed = False

    def _default_factory(self) -> Producer:
        return Producer(self.settings.producer_config())

    @property
    def closed(self) -> bool:
        return self._closed

    def build_headers(self, event: OutboxEvent, ctx: CorrelationContext) -> Headers:
        headers: Headers = [("content-type", CONTENT_TYPE.encode("utf-8"))]
        headers.extend(ctx.to_message_headers())
        headers.append(("event-id", str(event.id).encode("utf-8")))
        headers.append(("event-type", event.event_type.encode("utf-8")))
        headers.extend(trace_headers())
        return headers

    async def publish(self, event: OutboxEvent, ctx: CorrelationContext) -> PublishReceipt:
        """Produce one message for `event` and wait for the broker ack."""
        if self._closed:
            raise TransientPublishError("Publisher is closed", code="CLOSED")

        topic = self.router.topic_for(event.event_type)
        envelope = MessageEnvelope.from_outbox_event(event, ctx.source_service)
        value = envelope.to_bytes()
        log = ctx.bind(logger, event_id=str(event.id), attempts=event.attempts, topic=topic)

        attributes = {
            "messaging.system": "kafka",
            "messaging.destination.name": topic,
            "messaging.message.id": str(event.id),
            "event_type": event.event_type,
        }
        with create_span(f"{topic} publish", ctx, attributes, kind=SpanKind.PRODUCER) as span:
            headers = self.build_headers(event, ctx)

            if self._needs_rebuild:
                self._rebuild_producer()

            started = time.monotonic()
            receipt = await asyncio.to_thread(
                self._produce_and_wait, topic, event.aggregate_key, value, headers
            )
            elapsed = time.monotonic() - started

            span.set_attribute("messaging.kafka.destination.partition", receipt.partition)
            span.set_attribute("messaging.kafka.message.offset", receipt.offset)

        record_histogram(OUTBOX_PUBLISH_DURATION, elapsed, {"topic": topic})
        log.debug(
            f"Published {event.event_type} to {topic}[{receipt.partition}]@{receipt.offset}"
        )
        return receipt

    def _produce_and_wait(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: Headers,
    ) -> PublishReceipt:
        producer = self._producer
        report: Dict[str, object] = {}

        def on_delivery(err, msg):
            report["err"] = err
            report["msg"] = msg

        try:
            producer.produce(
                topic,
                key=key.encode("utf-8"),
                value=value,
                headers=headers,
                on_delivery=on_delivery,
            )
        except BufferError as e:
            raise TransientPublishError(f"Producer queue is full: {e}", code="QUEUE_FULL") from e
        except KafkaException as e:
            raise self._classify(e.args[0]) from e
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Message rejected by producer: {e}", code="INVALID_MESSAGE") from e

        timeout = self.settings.producer_timeout_seconds
        remaining = producer.flush(timeout)

        if "err" not in report:
            raise TransientPublishError(
                f"No delivery report within {timeout}s ({remaining} message(s) still queued)",
                code="_MSG_TIMED_OUT",
            )
        if report["err"] is not None:
            raise self._classify(report["err"])

        msg = report["msg"]
        return PublishReceipt(topic=msg.topic(), partition=msg.partition(), offset=msg.offset())

    def _classify(self, err: KafkaError) -> PublishError:
        if hasattr(err, "fatal") and err.fatal():
            self._needs_rebuild = True
        return classify_kafka_error(err)

    def _rebuild_producer(self) -> None:
        logger.warning("Kafka producer reported a fatal error, recreating it")
        old = self._producer
        try:
            old.flush(0)
        except KafkaException as e:
            logger.warning(f"Discarding fatal producer failed to flush: {e}")
        self._producer = self._producer_factory()
        self._needs_rebuild = False

    async def close(self, timeout: Optional[float] = None) -> None:
        """Flush queued messages and release the producer."""
        if self._closed:
            return
        self._closed = True
        timeout = self.settings.producer_timeout_seconds if timeout is None else timeout
        remaining = await asyncio.to_thread(self._producer.flush, timeout)
        if remaining:
            logger.warning(f"Kafka producer closed with {remaining} undelivered message(s)")
        else:
            logger.info("Kafka producer flushed and closed")
