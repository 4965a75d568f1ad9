"""
Event Consumer

Receiving side of the relay: consumes envelopes from Kafka, re-establishes
the Correlation Context from the message headers, deduplicates through the
inbox and hands each event to a handler.

Offsets are committed only after the handler succeeds. A failing handler
causes a seek back to the message so it is redelivered.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from confluent_kafka import Consumer, KafkaError, Message, TopicPartition
from opentelemetry.trace import SpanKind

from ..config import KafkaSettings
from ..correlation import CorrelationContext
from ..inbox import InboxGuard, InboxStore, InMemoryInboxStore
from ..observability import context_from_headers, create_span
from ..outbox.errors import SerializationError
from .models import MessageEnvelope

logger = logging.getLogger(__name__)

EventHandler = Callable[[MessageEnvelope, CorrelationContext], Awaitable[None]]


class ConsumeOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


class EventConsumer:
    """
    Consumes outbox-published events with at-least-once delivery.

    Usage:
        async def on_contact_event(envelope, ctx):
            ctx.bind(logger).info(f"Handling {envelope.event_type}")

        consumer = EventConsumer(
            KafkaSettings.from_env(),
            topics=["contact-events"],
            handler=on_contact_event,
            source_service="report-service",
        )
        await consumer.run()
    """

    def __init__(
        self,
        settings: KafkaSettings,
        topics: List[str],
        handler: EventHandler,
        source_service: str,
        inbox: Optional[InboxStore] = None,
        consumer: Optional[Consumer] = None,
        consumer_id: Optional[str] = None,
        poll_timeout: float = 1.0,
    ):
        self.settings = settings
        self.topics = list(topics)
        self.handler = handler
        self.source_service = source_service
        self.inbox = inbox or InMemoryInboxStore()
        self.consumer_id = consumer_id or source_service
        self.poll_timeout = poll_timeout
        self._consumer = consumer if consumer is not None else Consumer(settings.consumer_config())
        self._subscribed = False
        self._stop_event = asyncio.Event()

    def subscribe(self) -> None:
        if not self._subscribed:
            self._consumer.subscribe(self.topics)
            self._subscribed = True
            logger.info(f"Kafka consumer subscribed to {self.topics} as {self.consumer_id}")

    async def run(self) -> None:
        """Consume until stop() is called."""
        self.subscribe()
        try:
            while not self._stop_event.is_set():
                await self.poll_once()
        finally:
            await asyncio.to_thread(self._consumer.close)
            logger.info("Kafka consumer closed")

    def stop(self) -> None:
        self._stop_event.set()

    async def poll_once(self) -> Optional[ConsumeOutcome]:
        msg = await asyncio.to_thread(self._consumer.poll, self.poll_timeout)
        if msg is None:
            return None

        err = msg.error()
        if err is not None:
            if err.code() == KafkaError._PARTITION_EOF:
                return None
            logger.error(f"Kafka consumer error: {err}")
            return None

        return await self.handle_message(msg)

    async def handle_message(self, msg: Message) -> ConsumeOutcome:
        position = f"{msg.topic()}[{msg.partition()}]@{msg.offset()}"

        try:
            envelope = MessageEnvelope.from_bytes(msg.value())
        except SerializationError as e:
            ctx = CorrelationContext.from_message_headers(msg.headers(), self.source_service)
            ctx.bind(logger).error(f"Skipping malformed message at {position}: {e}")
            await self._commit(msg)
            return ConsumeOutcome.SKIPPED

        ctx = CorrelationContext.from_message_headers(
            msg.headers(),
            self.source_service,
            fallback=envelope.correlation_id,
        ).with_fields(event_id=str(envelope.event_id), event_type=envelope.event_type)
        log = ctx.bind(logger)

        attributes = {
            "messaging.system": "kafka",
            "messaging.destination.name": msg.topic(),
            "messaging.message.id": str(envelope.event_id),
            "event_type": envelope.event_type,
        }
        parent = context_from_headers(msg.headers())

        with create_span(f"{msg.topic()} process", ctx, attributes, kind=SpanKind.CONSUMER, parent=parent):
            try:
                async with InboxGuard(self.inbox, envelope.event_id, self.consumer_id) as guard:
                    if guard.should_process:
                        await self.handler(envelope, ctx)
            except Exception as e:
                log.error(f"Handler failed for {envelope.event_type} at {position}: {e}", exc_info=True)
                self._consumer.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
                return ConsumeOutcome.FAILED

        await self._commit(msg)
        if not guard.should_process:
            log.info(f"Duplicate {envelope.event_type} at {position} skipped")
            return ConsumeOutcome.DUPLICATE
        return ConsumeOutcome.PROCESSED

    async def _commit(self, msg: Message) -> None:
        await asyncio.to_thread(self._consumer.commit, message=msg, asynchronous=False)
