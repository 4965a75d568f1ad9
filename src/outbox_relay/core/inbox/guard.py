"""
Inbox Guard

Consumer-side deduplication: an event id is processed at most once per
consumer, even though the outbox relay delivers at least once.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Tuple
from uuid import UUID

from ..database.adapter import DatabaseAdapter, affected_rows

logger = logging.getLogger(__name__)

INBOX_TABLE = "inbox_events"

INBOX_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {INBOX_TABLE} (
    event_id UUID NOT NULL,
    consumer_id VARCHAR(100) NOT NULL,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (event_id, consumer_id)
);
"""


class InboxStore(ABC):
    """Records which events each consumer has processed."""

    @abstractmethod
    async def mark_processed(self, event_id: UUID, consumer_id: str) -> bool:
        """Record the event; False if it was already recorded."""

    @abstractmethod
    async def is_processed(self, event_id: UUID, consumer_id: str) -> bool:
        ...

    @abstractmethod
    async def remove_processed(self, event_id: UUID, consumer_id: str) -> bool:
        ...


class InMemoryInboxStore(InboxStore):

    def __init__(self):
        self._seen: Dict[Tuple[UUID, str], datetime] = {}
        self._lock = asyncio.Lock()

    async def mark_processed(self, event_id: UUID, consumer_id: str) -> bool:
        async with self._lock:
            key = (event_id, consumer_id)
            if key in self._seen:
                return False
            self._seen[key] = datetime.now(timezone.utc)
            return True

    async def is_processed(self, event_id: UUID, consumer_id: str) -> bool:
        return (event_id, consumer_id) in self._seen

    async def remove_processed(self, event_id: UUID, consumer_id: str) -> bool:
        async with self._lock:
            return self._seen.pop((event_id, consumer_id), None) is not None


class PostgresInboxStore(InboxStore):

    def __init__(self, db: DatabaseAdapter):
        self._db = db

    async def ensure_schema(self) -> None:
        await self._db.execute(INBOX_SCHEMA_SQL)

    async def mark_processed(self, event_id: UUID, consumer_id: str) -> bool:
        status = await self._db.execute(
            f"""
            INSERT INTO {INBOX_TABLE} (event_id, consumer_id, processed_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (event_id, consumer_id) DO NOTHING
            """,
            event_id,
            consumer_id,
            datetime.now(timezone.utc)
        )
        return affected_rows(status) == 1

    async def is_processed(self, event_id: UUID, consumer_id: str) -> bool:
        result = await self._db.fetchrow(
            f"""
            SELECT 1 FROM {INBOX_TABLE}
            WHERE event_id = $1 AND consumer_id = $2
            """,
            event_id,
            consumer_id
        )
        return result is not None

    async def remove_processed(self, event_id: UUID, consumer_id: str) -> bool:
        status = await self._db.execute(
            f"""
            DELETE FROM {INBOX_TABLE}
            WHERE event_id = $1 AND consumer_id = $2
            """,
            event_id,
            consumer_id
        )
        return affected_rows(status) > 0


class InboxGuard:
    """
    Guards against duplicate event processing.

    Usage:
        async with InboxGuard(store, event_id, "report-service") as guard:
            if guard.should_process:
                await handle(envelope, ctx)
            else:
                logger.info("Event already processed, skipping")

    If processing fails (exception raised), the inbox entry is removed
    so a redelivery is processed again.
    """

    def __init__(self, store: InboxStore, event_id: UUID, consumer_id: str):
        self.store = store
        self.event_id = event_id
        self.consumer_id = consumer_id
        self.should_process = False

    async def __aenter__(self):
        self.should_process = await self.store.mark_processed(self.event_id, self.consumer_id)
        if self.should_process:
            logger.debug(
                f"InboxGuard: event {self.event_id} marked for processing by {self.consumer_id}"
            )
        else:
            logger.debug(
                f"InboxGuard: event {self.event_id} already processed by {self.consumer_id}"
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and self.should_process:
            try:
                await self.store.remove_processed(self.event_id, self.consumer_id)
                logger.warning(
                    f"InboxGuard: removed entry for failed processing of event {self.event_id}"
                )
            except Exception as delete_error:
                # the original exception is the one worth propagating
                logger.error(
                    f"InboxGuard: failed to remove inbox entry after error: {delete_error}"
                )
        return False
