"""
Unit tests for the event consumer: context re-establishment, inbox
deduplication and offset handling.
"""

import pytest
from confluent_kafka import KafkaError

from outbox_relay.core.config import KafkaSettings
from outbox_relay.core.correlation import CORRELATION_ID_HEADER
from outbox_relay.core.events.consumer import ConsumeOutcome, EventConsumer
from outbox_relay.core.events.models import MessageEnvelope
from outbox_relay.core.inbox import InMemoryInboxStore
from tests.conftest import FakeConsumer, FakeMessage


def _message(event, offset=0, headers=None):
    envelope = MessageEnvelope.from_outbox_event(event, "contact-service")
    if headers is None:
        headers = [(CORRELATION_ID_HEADER, event.correlation_id.encode())]
    return FakeMessage("contact-events", 0, offset, envelope.to_bytes(), event.aggregate_key.encode(), headers)


class Recorder:
    def __init__(self, fail_times=0):
        self.received = []
        self.fail_times = fail_times

    async def __call__(self, envelope, ctx):
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("handler crashed")
        self.received.append((envelope, ctx))


def _consumer(handler, fake, inbox=None):
    return EventConsumer(
        KafkaSettings(),
        topics=["contact-events"],
        handler=handler,
        source_service="report-service",
        inbox=inbox,
        consumer=fake,
    )


class TestHandleMessage:
    """Tests for EventConsumer.handle_message."""

    @pytest.mark.asyncio
    async def test_handler_gets_envelope_and_context(self, make_event, ctx):
        handler, fake = Recorder(), FakeConsumer()
        event = make_event(data={"id": "c-1"})
        msg = _message(event, offset=7)

        outcome = await _consumer(handler, fake).handle_message(msg)

        assert outcome == ConsumeOutcome.PROCESSED
        envelope, consumer_ctx = handler.received[0]
        assert envelope.event_id == event.id
        assert envelope.data == {"id": "c-1"}
        assert consumer_ctx.correlation_id == ctx.correlation_id
        assert consumer_ctx.source_service == "report-service"
        assert consumer_ctx.fields["event_id"] == str(event.id)
        assert fake.commits == [msg]

    @pytest.mark.asyncio
    async def test_envelope_correlation_used_without_header(self, make_event, ctx):
        handler = Recorder()
        msg = _message(make_event(), headers=[])

        await _consumer(handler, FakeConsumer()).handle_message(msg)

        assert handler.received[0][1].correlation_id == ctx.correlation_id

    @pytest.mark.asyncio
    async def test_duplicate_delivery_handled_once(self, make_event):
        """The same event delivered twice reaches the handler once."""
        handler, fake = Recorder(), FakeConsumer()
        consumer = _consumer(handler, fake)
        event = make_event()

        first = await consumer.handle_message(_message(event, offset=1))
        second = await consumer.handle_message(_message(event, offset=2))

        assert first == ConsumeOutcome.PROCESSED
        assert second == ConsumeOutcome.DUPLICATE
        assert len(handler.received) == 1
        assert len(fake.commits) == 2

    @pytest.mark.asyncio
    async def test_handler_failure_seeks_back(self, make_event):
        """A failing handler leaves the offset uncommitted and rewinds to the message."""
        handler, fake = Recorder(fail_times=1), FakeConsumer()
        inbox = InMemoryInboxStore()
        consumer = _consumer(handler, fake, inbox)
        event = make_event()
        msg = _message(event, offset=11)

        outcome = await consumer.handle_message(msg)

        assert outcome == ConsumeOutcome.FAILED
        assert fake.commits == []
        assert fake.seeks[0].topic == "contact-events"
        assert fake.seeks[0].offset == 11
        assert not await inbox.is_processed(event.id, "report-service")

        assert await consumer.handle_message(msg) == ConsumeOutcome.PROCESSED
        assert len(handler.received) == 1

    @pytest.mark.asyncio
    async def test_malformed_message_skipped(self):
        handler, fake = Recorder(), FakeConsumer()
        msg = FakeMessage("contact-events", 0, 3, b"not json", None, [])

        outcome = await _consumer(handler, fake).handle_message(msg)

        assert outcome == ConsumeOutcome.SKIPPED
        assert handler.received == []
        assert fake.commits == [msg]


class TestPolling:

    @pytest.mark.asyncio
    async def test_poll_once_empty(self):
        assert await _consumer(Recorder(), FakeConsumer()).poll_once() is None

    @pytest.mark.asyncio
    async def test_partition_eof_ignored(self):
        eof = FakeMessage("contact-events", error=KafkaError(KafkaError._PARTITION_EOF))
        handler = Recorder()

        assert await _consumer(handler, FakeConsumer([eof])).poll_once() is None
        assert handler.received == []

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, make_event):
        handler = Recorder()
        events = [make_event(aggregate_key=f"c-{i}", offset=i) for i in range(3)]
        fake = FakeConsumer([_message(e, offset=i) for i, e in enumerate(events)])
        consumer = _consumer(handler, fake)

        async def stop_after_three(envelope, ctx):
            await handler(envelope, ctx)
            if len(handler.received) == 3:
                consumer.stop()

        consumer.handler = stop_after_three
        await consumer.run()

        assert [env.event_id for env, _ in handler.received] == [e.id for e in events]
        assert fake.subscriptions == [["contact-events"]]
        assert fake.closed
