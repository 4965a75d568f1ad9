"""
Outbox Lifecycle Management

Integrates the outbox processor with a FastAPI application lifecycle.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from ..config import KafkaSettings, OutboxSettings
from ..database.adapter import close_database, get_database
from ..events.publisher import KafkaEventPublisher
from .postgres import PostgresOutboxStore
from .processor import (
    EventPublisher,
    OutboxProcessor,
    start_outbox_processor,
    stop_outbox_processor,
)
from .store import OutboxStore

logger = logging.getLogger(__name__)


def is_outbox_enabled() -> bool:
    """Check if outbox processing is enabled."""
    return os.getenv("OUTBOX_ENABLED", "true").lower() == "true"


def is_outbox_processor_enabled() -> bool:
    """
    Check if this instance should run the outbox processor.

    Claims make several processors safe; this switch lets a deployment
    run the relay only in dedicated instances.
    """
    return os.getenv("OUTBOX_PROCESSOR_ENABLED", "true").lower() == "true"


@asynccontextmanager
async def outbox_lifespan(
    store: Optional[OutboxStore] = None,
    publisher: Optional[EventPublisher] = None,
    settings: Optional[OutboxSettings] = None,
) -> AsyncIterator[Optional[OutboxProcessor]]:
    """
    Lifespan context manager for the outbox processor.

    Without an explicit store/publisher the Postgres store and the Kafka
    publisher are built from the environment.

    Usage in FastAPI:
        from outbox_relay.core.outbox.lifecycle import outbox_lifespan

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with outbox_lifespan() as processor:
                yield

        app = FastAPI(lifespan=lifespan)
    """
    if not (is_outbox_enabled() and is_outbox_processor_enabled()):
        reason = []
        if not is_outbox_enabled():
            reason.append("OUTBOX_ENABLED=false")
        if not is_outbox_processor_enabled():
            reason.append("OUTBOX_PROCESSOR_ENABLED=false")
        logger.info(f"Outbox processor disabled: {', '.join(reason)}")
        yield None
        return

    settings = settings or OutboxSettings.from_env()
    owns_database = store is None
    if store is None:
        db = await get_database()
        store = PostgresOutboxStore(
            db,
            max_attempts=settings.max_attempts,
            lease_timeout=settings.lease_timeout,
        )
    if publisher is None:
        publisher = KafkaEventPublisher(KafkaSettings.from_env())

    logger.info("Starting outbox processor...")
    processor = await start_outbox_processor(store, publisher, settings)
    try:
        yield processor
    finally:
        logger.info("Stopping outbox processor...")
        await stop_outbox_processor()
        if owns_database:
            await close_database()
