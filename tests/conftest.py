"""
Shared fixtures and fakes for the outbox relay tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from outbox_relay.core.config import KafkaSettings, OutboxSettings
from outbox_relay.core.correlation import CorrelationContext
from outbox_relay.core.outbox.errors import StoreError
from outbox_relay.core.outbox.memory import InMemoryOutboxStore
from outbox_relay.core.outbox.models import OutboxEvent, OutboxStatus

START = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float):
        self.value += seconds


class RecordingPublisher:
    """
    Publisher double that records every call.

    `outcomes` maps an event id to an exception to raise for it; `script`
    may decide per call instead.
    """

    def __init__(self):
        self.calls: List[Tuple[OutboxEvent, CorrelationContext]] = []
        self.outcomes: Dict[Any, Exception] = {}
        self.script: Optional[Callable[[OutboxEvent], Optional[Exception]]] = None
        self.on_publish: Optional[Callable[[OutboxEvent], Any]] = None
        self.closed = False

    @property
    def published_ids(self):
        return [event.id for event, _ in self.calls]

    async def publish(self, event: OutboxEvent, ctx: CorrelationContext):
        self.calls.append((event, ctx))
        if self.on_publish is not None:
            await self.on_publish(event)
        error = self.outcomes.get(event.id)
        if error is None and self.script is not None:
            error = self.script(event)
        if error is not None:
            raise error
        return ("topic", 0, len(self.calls))

    async def close(self, timeout: Optional[float] = None):
        self.closed = True


class FlakyStore(InMemoryOutboxStore):
    """In-memory store that can be switched off to simulate an outage."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.available = True

    def _check(self):
        if not self.available:
            raise StoreError("connection refused")

    async def fetch_pending(self, batch_size, now, **kwargs):
        self._check()
        return await super().fetch_pending(batch_size, now, **kwargs)

    async def fetch_retryable(self, batch_size, now, **kwargs):
        self._check()
        return await super().fetch_retryable(batch_size, now, **kwargs)

    async def mark_published(self, event_id, published_at, **kwargs):
        self._check()
        return await super().mark_published(event_id, published_at, **kwargs)

    async def mark_failed(self, event_id, error, next_retry_at, attempted_at, **kwargs):
        self._check()
        return await super().mark_failed(event_id, error, next_retry_at, attempted_at, **kwargs)

    async def delete_older_than(self, retention, status=OutboxStatus.PUBLISHED, now=None):
        self._check()
        return await super().delete_older_than(retention, status, now)


class FakeMessage:
    """Stand-in for confluent_kafka.Message."""

    def __init__(
        self,
        topic: str,
        partition: int = 0,
        offset: int = 0,
        value: Optional[bytes] = None,
        key: Optional[bytes] = None,
        headers: Optional[list] = None,
        error: Any = None,
    ):
        self._topic = topic
        self._partition = partition
        self._offset = offset
        self._value = value
        self._key = key
        self._headers = headers
        self._error = error

    def topic(self):
        return self._topic

    def partition(self):
        return self._partition

    def offset(self):
        return self._offset

    def value(self):
        return self._value

    def key(self):
        return self._key

    def headers(self):
        return self._headers

    def error(self):
        return self._error


class FakeProducer:
    """
    Stand-in for confluent_kafka.Producer.

    Delivery callbacks fire on flush() with `delivery_error` (None = ack).
    With `deliver=False` flush never serves callbacks, like a broker timeout.
    """

    def __init__(self, delivery_error: Any = None, deliver: bool = True, produce_error: Exception = None):
        self.delivery_error = delivery_error
        self.deliver = deliver
        self.produce_error = produce_error
        self.produced: List[Dict[str, Any]] = []
        self.flush_calls: List[Optional[float]] = []
        self._queued: List[Tuple[FakeMessage, Callable]] = []

    def produce(self, topic, key=None, value=None, headers=None, on_delivery=None):
        if self.produce_error is not None:
            raise self.produce_error
        record = {"topic": topic, "key": key, "value": value, "headers": list(headers or [])}
        self.produced.append(record)
        msg = FakeMessage(topic, 0, len(self.produced) - 1, value, key, headers)
        self._queued.append((msg, on_delivery))

    def flush(self, timeout=None):
        self.flush_calls.append(timeout)
        if not self.deliver:
            return len(self._queued)
        while self._queued:
            msg, callback = self._queued.pop(0)
            if callback is not None:
                if self.delivery_error is not None:
                    callback(self.delivery_error, msg)
                else:
                    callback(None, msg)
        return 0


class FakeConsumer:
    """Stand-in for confluent_kafka.Consumer."""

    def __init__(self, messages=None):
        self.messages = list(messages or [])
        self.subscriptions: List[List[str]] = []
        self.commits: List[FakeMessage] = []
        self.seeks: list = []
        self.closed = False

    def subscribe(self, topics):
        self.subscriptions.append(list(topics))

    def poll(self, timeout=None):
        if self.messages:
            return self.messages.pop(0)
        return None

    def commit(self, message=None, asynchronous=True):
        self.commits.append(message)

    def seek(self, partition):
        self.seeks.append(partition)

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def settings():
    return OutboxSettings(
        service_name="contact-service",
        batch_size=10,
        max_attempts=5,
        processing_interval_seconds=0.01,
        error_backoff_seconds=0.01,
        shutdown_timeout_seconds=5,
    )


@pytest.fixture
def kafka_settings():
    return KafkaSettings(message_timeout_ms=1000)


@pytest.fixture
def store():
    return FlakyStore(max_attempts=5, lease_timeout=timedelta(minutes=5), instance_id="test-relay")


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def ctx():
    return CorrelationContext("corr-abc123", "contact-service")


@pytest.fixture
def make_event(clock, ctx):
    """Build a pending OutboxEvent, created `offset` seconds after the clock start."""

    def _make(
        event_type: str = "ContactCreated",
        aggregate_key: str = "contact-1",
        data: Any = None,
        offset: float = 0,
        correlation: Optional[CorrelationContext] = None,
    ) -> OutboxEvent:
        return OutboxEvent.create(
            correlation or ctx,
            event_type,
            data if data is not None else {"id": aggregate_key},
            aggregate_key,
            created_at=clock.now + timedelta(seconds=offset),
        )

    return _make
