"""
Unit tests for running the processor inside an application lifespan and
the standalone runner's health report.
"""

import pytest

from outbox_relay.core.outbox.health import HealthStatus
from outbox_relay.core.outbox.lifecycle import outbox_lifespan
from outbox_relay.core.outbox.models import OutboxStatus
from outbox_relay.core.outbox.processor import OutboxProcessor
from outbox_relay.core.outbox.runner import OutboxRunner


class TestOutboxLifespan:

    @pytest.mark.asyncio
    async def test_processor_runs_for_lifespan(self, store, publisher, settings, make_event):
        event = make_event()
        await store.insert(event)

        async with outbox_lifespan(store, publisher, settings) as processor:
            assert processor.is_running

        assert not processor.is_running
        assert publisher.closed
        assert (await store.get(event.id)).status == OutboxStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_disabled_by_environment(self, monkeypatch, store, publisher, settings):
        monkeypatch.setenv("OUTBOX_PROCESSOR_ENABLED", "false")

        async with outbox_lifespan(store, publisher, settings) as processor:
            assert processor is None

        assert not publisher.closed


class TestRunnerHealth:

    @pytest.mark.asyncio
    async def test_not_running_is_unhealthy(self, settings, kafka_settings):
        runner = OutboxRunner(settings, kafka_settings)
        health = await runner.health_check()

        assert health["status"] == "unhealthy"
        assert health["running"] is False

    @pytest.mark.asyncio
    async def test_running_reports_outbox_state(self, settings, kafka_settings, store, publisher):
        runner = OutboxRunner(settings, kafka_settings)
        runner.store = store
        runner.processor = OutboxProcessor(store, publisher, settings)
        await runner.processor.start()
        try:
            health = await runner.health_check()
        finally:
            await runner.processor.stop()

        assert health["status"] == HealthStatus.HEALTHY.value
        assert health["running"] is True
        assert "counts" in health["outbox"]

    def test_request_shutdown(self, settings, kafka_settings):
        runner = OutboxRunner(settings, kafka_settings)
        runner.request_shutdown()
        assert runner._shutdown_event.is_set()
