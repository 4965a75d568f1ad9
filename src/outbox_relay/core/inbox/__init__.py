"""
Inbox Pattern Implementation

Provides consumer-side deduplication for exactly-once processing.

Usage:
    from outbox_relay.core.inbox import InboxGuard, InMemoryInboxStore

    async with InboxGuard(store, event_id, consumer_id="report-service") as guard:
        if guard.should_process:
            await do_something(event)
"""

from .guard import (
    InboxGuard,
    InboxStore,
    InMemoryInboxStore,
    PostgresInboxStore,
)

__all__ = [
    "InboxGuard",
    "InboxStore",
    "InMemoryInboxStore",
    "PostgresInboxStore",
]
