"""
Outbox Pattern Implementation

Provides transactional event publishing with guaranteed delivery.

Usage:
    from outbox_relay.core.outbox import transactional_outbox

    async with transactional_outbox(store, ctx) as txn:
        # This is atomic with your business transaction
        await txn.conn.execute("INSERT INTO contacts ...")
        await txn.emit("ContactCreated", {"id": contact_id}, aggregate_key=contact_id)
"""

from .errors import (
    OutboxError,
    PublishError,
    TransientPublishError,
    PermanentPublishError,
    SerializationError,
    StoreError,
    InvalidTransitionError,
    ClaimLostError,
)
from .models import OutboxEvent, OutboxStatus, OutboxStatistics
from .store import OutboxStore
from .memory import InMemoryOutboxStore
from .postgres import PostgresOutboxStore
from .retry import RetryPolicy
from .writer import OutboxWriter, TransactionalOutbox, transactional_outbox
from .processor import (
    OutboxProcessor,
    PhaseResult,
    TickResult,
    start_outbox_processor,
    stop_outbox_processor,
    get_outbox_processor,
)
from .dlq import DLQManager, DLQEntry, DLQAction
from .health import HealthStatus, OutboxHealth, evaluate_outbox_health

__all__ = [
    "OutboxError",
    "PublishError",
    "TransientPublishError",
    "PermanentPublishError",
    "SerializationError",
    "StoreError",
    "InvalidTransitionError",
    "ClaimLostError",
    "OutboxEvent",
    "OutboxStatus",
    "OutboxStatistics",
    "OutboxStore",
    "InMemoryOutboxStore",
    "PostgresOutboxStore",
    "RetryPolicy",
    "OutboxWriter",
    "TransactionalOutbox",
    "transactional_outbox",
    "OutboxProcessor",
    "PhaseResult",
    "TickResult",
    "start_outbox_processor",
    "stop_outbox_processor",
    "get_outbox_processor",
    "DLQManager",
    "DLQEntry",
    "DLQAction",
    "HealthStatus",
    "OutboxHealth",
    "evaluate_outbox_health",
]
