"""
Outbox Processor Runner

Standalone process that relays the outbox to Kafka. Designed to run in
its own container next to the service that writes the outbox.

Usage:
    python -m outbox_relay.core.outbox.runner
    outbox-relay

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required)
    KAFKA_BOOTSTRAP_SERVERS: Kafka brokers (default: localhost:9092)
    OUTBOX_*: Processor settings, see outbox_relay.core.config
    OUTBOX_ENSURE_SCHEMA: Create the outbox table on startup (default: true)
    OTEL_EXPORTER_OTLP_ENDPOINT: Enables trace and metric export when set
    LOG_LEVEL: Logging level (default: INFO)
    LOG_FORMAT: "json" or "text" (default: json)
"""

import os
import sys
import signal
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from ..config import KafkaSettings, OutboxSettings
from ..database.adapter import DatabaseAdapter, DatabaseConfig
from ..events.publisher import KafkaEventPublisher
from ..observability import configure_logging, init_metrics, init_tracing
from .health import evaluate_outbox_health
from .postgres import PostgresOutboxStore
from .processor import OutboxProcessor

logger = logging.getLogger(__name__)


class OutboxRunner:
    """
    Manages the outbox processor lifecycle with graceful shutdown.
    """

    def __init__(
        self,
        settings: Optional[OutboxSettings] = None,
        kafka_settings: Optional[KafkaSettings] = None,
    ):
        self.settings = settings or OutboxSettings.from_env()
        self.kafka_settings = kafka_settings or KafkaSettings.from_env()
        self.processor: Optional[OutboxProcessor] = None
        self.store: Optional[PostgresOutboxStore] = None
        self._db: Optional[DatabaseAdapter] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        """Handle shutdown signal."""
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self._shutdown_requested = True
        self._shutdown_event.set()

    def request_shutdown(self):
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self):
        """Run the outbox processor until shutdown is requested."""
        logger.info("Starting Outbox Processor Runner")
        logger.info(f"  Service: {self.settings.service_name}")
        logger.info(f"  Interval: {self.settings.processing_interval_seconds}s")
        logger.info(f"  Batch size: {self.settings.batch_size}")
        logger.info(f"  Max attempts: {self.settings.max_attempts}")
        logger.info(f"  Brokers: {self.kafka_settings.bootstrap_servers}")

        self._setup_signal_handlers()

        self._db = DatabaseAdapter(DatabaseConfig())
        await self._db.connect()

        self.store = PostgresOutboxStore(
            self._db,
            max_attempts=self.settings.max_attempts,
            lease_timeout=self.settings.lease_timeout,
        )
        if os.getenv("OUTBOX_ENSURE_SCHEMA", "true").lower() == "true":
            await self.store.ensure_schema()

        self.processor = OutboxProcessor(
            self.store,
            KafkaEventPublisher(self.kafka_settings),
            self.settings,
        )

        try:
            await self.processor.start()
            logger.info("Outbox Processor is running")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Outbox Processor error: {e}", exc_info=True)
            raise
        finally:
            logger.info("Stopping Outbox Processor")
            if self.processor:
                await self.processor.stop()
            await self._db.disconnect()
            logger.info("Outbox Processor stopped")

    async def health_check(self) -> dict:
        """Return health status for monitoring."""
        running = self.processor.is_running if self.processor else False
        result = {
            "status": "healthy" if running else "unhealthy",
            "running": running,
            "shutdown_requested": self._shutdown_requested,
        }
        if running and self.store is not None:
            now = datetime.now(timezone.utc)
            stats = await self.store.statistics(now)
            health = evaluate_outbox_health(stats, now)
            result["status"] = health.status.value
            result["reasons"] = health.reasons
            result["outbox"] = health.data
        return result


async def main():
    """Main entry point."""
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_FORMAT", "json").lower() == "json",
        service_name=os.getenv("SERVICE_NAME", "outbox-relay"),
    )

    if not os.getenv("DATABASE_URL"):
        logger.error("DATABASE_URL environment variable is required")
        sys.exit(1)

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp_endpoint:
        service_name = os.getenv("SERVICE_NAME", "outbox-relay")
        init_tracing(service_name=service_name, otlp_endpoint=otlp_endpoint)
        init_metrics(service_name=service_name, otlp_endpoint=otlp_endpoint)

    runner = OutboxRunner()
    await runner.run()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
