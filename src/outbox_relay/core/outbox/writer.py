"""
Outbox Writer

Writes events to the outbox within the same unit of work as the business
change they describe, so either both are stored or neither is.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Tuple

from ..correlation import CorrelationContext
from .models import OutboxEvent
from .store import OutboxStore

logger = logging.getLogger(__name__)


class OutboxWriter:
    """
    Writes events to the outbox for reliable delivery.

    Usage:
        writer = OutboxWriter(store)
        async with store.transaction() as conn:
            await conn.execute("INSERT INTO contacts ...")
            await writer.write(ctx, "ContactCreated", {"id": contact_id}, contact_id, conn=conn)
        # Transaction commits, outbox record is persisted
    """

    def __init__(self, store: OutboxStore):
        self.store = store

    async def write(
        self,
        ctx: CorrelationContext,
        event_type: str,
        data: Any,
        aggregate_key: str,
        conn: Any = None,
    ) -> OutboxEvent:
        """
        Write an event to the outbox.

        Args:
            ctx: Correlation context of the current operation
            event_type: Event type from the taxonomy (e.g. "ContactCreated")
            data: JSON-serializable event payload
            aggregate_key: Aggregate id; also the Kafka message key
            conn: Unit of work from store.transaction()

        Returns:
            The created OutboxEvent
        """
        event = OutboxEvent.create(ctx, event_type, data, aggregate_key)
        await self.store.insert(event, conn=conn)

        ctx.bind(logger).debug(
            "Wrote event to outbox: id=%s type=%s aggregate=%s",
            event.id, event.event_type, event.aggregate_key
        )
        return event

    async def write_batch(
        self,
        ctx: CorrelationContext,
        events: List[Tuple[str, Any, str]],  # (event_type, data, aggregate_key)
        conn: Any = None,
    ) -> List[OutboxEvent]:
        """Write several events; pass `conn` to keep them in one transaction."""
        results = []
        for event_type, data, aggregate_key in events:
            results.append(await self.write(ctx, event_type, data, aggregate_key, conn=conn))
        return results


class TransactionalOutbox:
    """
    Emits events inside an open unit of work.

    `conn` is whatever store.transaction() yielded: an asyncpg connection
    for the Postgres store, so business statements can share it.
    """

    def __init__(self, writer: OutboxWriter, ctx: CorrelationContext, conn: Any):
        self.writer = writer
        self.ctx = ctx
        self.conn = conn
        self._events: List[OutboxEvent] = []

    async def emit(self, event_type: str, data: Any, aggregate_key: str) -> OutboxEvent:
        event = await self.writer.write(self.ctx, event_type, data, aggregate_key, conn=self.conn)
        self._events.append(event)
        return event

    @property
    def emitted_events(self) -> List[OutboxEvent]:
        """Get list of events emitted in this transaction."""
        return self._events.copy()


@asynccontextmanager
async def transactional_outbox(
    store: OutboxStore,
    ctx: CorrelationContext,
    writer: Optional[OutboxWriter] = None,
) -> AsyncIterator[TransactionalOutbox]:
    """
    Context manager for a business change plus its outbox records.

    Usage:
        async with transactional_outbox(store, ctx) as txn:
            await txn.conn.execute("UPDATE contacts ...")
            await txn.emit("ContactUpdated", {...}, aggregate_key=contact_id)
        # Both commit together or both roll back
    """
    writer = writer or OutboxWriter(store)
    async with store.transaction() as conn:
        yield TransactionalOutbox(writer, ctx, conn)
