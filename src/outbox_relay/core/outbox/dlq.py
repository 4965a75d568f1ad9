"""
Dead Letter Management

Inspects and acts on outbox records that reached DEAD_LETTERED, either
through a permanent publish error or after exhausting their attempts.

Replay never resurrects the dead record: it inserts a fresh PENDING copy
(same type, payload, aggregate and correlation id) and leaves the dead
record terminal for the audit trail.
"""

import argparse
import asyncio
import json
import logging
import sys
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..config import OutboxSettings
from ..database.adapter import close_database, get_database
from .models import OutboxEvent, OutboxStatus
from .postgres import PostgresOutboxStore
from .store import OutboxStore

logger = logging.getLogger(__name__)


class DLQAction(str, Enum):
    """Actions that can be taken on DLQ entries."""
    REPLAY = "replay"
    PURGE = "purge"


@dataclass
class DLQEntry:
    """A dead-lettered outbox record."""
    id: UUID
    correlation_id: str
    event_type: str
    aggregate_key: str
    payload: str
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    failed_at: Optional[datetime]

    @classmethod
    def from_event(cls, event: OutboxEvent) -> "DLQEntry":
        return cls(
            id=event.id,
            correlation_id=event.correlation_id,
            event_type=event.event_type,
            aggregate_key=event.aggregate_key,
            payload=event.payload,
            attempts=event.attempts,
            last_error=event.last_error,
            created_at=event.created_at,
            failed_at=event.last_attempt_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "correlation_id": self.correlation_id,
            "event_type": self.event_type,
            "aggregate_key": self.aggregate_key,
            "payload": self.payload,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None
        }


class DLQManager:
    """
    Manages dead-lettered outbox records.

    Responsibilities:
    - Query DLQ entries
    - Replay entries as new pending events
    - Purge entries
    - Summarise the DLQ
    """

    def __init__(self, store: OutboxStore):
        self.store = store

    async def list_entries(self, limit: int = 100, offset: int = 0) -> List[DLQEntry]:
        events = await self.store.list_by_status(OutboxStatus.DEAD_LETTERED, limit, offset)
        return [DLQEntry.from_event(event) for event in events]

    async def count(self) -> int:
        stats = await self.store.statistics(datetime.now(timezone.utc))
        return stats.dead_lettered

    async def stats(self, scan_limit: int = 10_000) -> Dict[str, Any]:
        """DLQ totals, per event type breakdown and the oldest entry."""
        entries = await self.list_entries(limit=scan_limit)
        by_type = Counter(entry.event_type for entry in entries)
        oldest = min((entry.created_at for entry in entries), default=None)
        return {
            "total_count": await self.count(),
            "by_event_type": dict(by_type.most_common()),
            "oldest_entry": oldest.isoformat() if oldest else None,
        }

    async def replay(self, event_id: UUID, operator_id: Optional[str] = None) -> Optional[OutboxEvent]:
        """
        Re-enqueue a dead-lettered record as a new PENDING event.

        Returns the new record, or None if `event_id` is not dead-lettered.
        """
        dead = await self.store.get(event_id)
        if dead is None or dead.status != OutboxStatus.DEAD_LETTERED:
            logger.warning(f"DLQ replay skipped: {event_id} is not dead-lettered")
            return None

        replayed = OutboxEvent(
            event_type=dead.event_type,
            payload=dead.payload,
            aggregate_key=dead.aggregate_key,
            correlation_id=dead.correlation_id,
        )
        await self.store.insert(replayed)
        self._log_action(event_id, DLQAction.REPLAY, operator_id, replayed.id)
        return replayed

    async def purge(self, event_id: UUID, operator_id: Optional[str] = None) -> bool:
        """Permanently delete a dead-lettered record."""
        deleted = await self.store.delete(event_id, OutboxStatus.DEAD_LETTERED)
        if deleted:
            self._log_action(event_id, DLQAction.PURGE, operator_id)
        return deleted

    async def purge_old(self, days: int = 30, operator_id: Optional[str] = None) -> int:
        """Purge dead-lettered records created more than `days` ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        entries = await self.list_entries(limit=10_000)
        purged = 0
        for entry in entries:
            if entry.created_at < cutoff and await self.purge(entry.id, operator_id):
                purged += 1
        logger.info(f"DLQ purged {purged} entries older than {days} days by {operator_id}")
        return purged

    def _log_action(
        self,
        event_id: UUID,
        action: DLQAction,
        operator_id: Optional[str],
        new_id: Optional[UUID] = None,
    ):
        """Log DLQ action for audit."""
        suffix = f" as {new_id}" if new_id else ""
        logger.info(f"DLQ action: {action.value} on {event_id}{suffix} by {operator_id}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="outbox-dlq", description="Outbox dead letter management")
    parser.add_argument("--operator", default=None, help="Operator id recorded in the audit log")
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="List dead-lettered events")
    list_cmd.add_argument("--limit", type=int, default=50)
    list_cmd.add_argument("--offset", type=int, default=0)

    sub.add_parser("stats", help="Show DLQ statistics")

    replay_cmd = sub.add_parser("replay", help="Re-enqueue a dead-lettered event")
    replay_cmd.add_argument("event_id", type=UUID)

    purge_cmd = sub.add_parser("purge", help="Delete a dead-lettered event")
    purge_cmd.add_argument("event_id", type=UUID)

    return parser


async def run_command(manager: DLQManager, args: argparse.Namespace) -> int:
    """Execute one parsed CLI command against `manager`; returns the exit code."""
    if args.command == "list":
        entries = await manager.list_entries(args.limit, args.offset)
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return 0

    if args.command == "stats":
        print(json.dumps(await manager.stats(), indent=2))
        return 0

    if args.command == "replay":
        replayed = await manager.replay(args.event_id, args.operator)
        if replayed is None:
            print(f"{args.event_id} is not a dead-lettered event", file=sys.stderr)
            return 1
        print(str(replayed.id))
        return 0

    if args.command == "purge":
        if not await manager.purge(args.event_id, args.operator):
            print(f"{args.event_id} is not a dead-lettered event", file=sys.stderr)
            return 1
        return 0

    return 2


async def _main(args: argparse.Namespace) -> int:
    settings = OutboxSettings.from_env()
    db = await get_database()
    try:
        store = PostgresOutboxStore(db, max_attempts=settings.max_attempts)
        return await run_command(DLQManager(store), args)
    finally:
        await close_database()


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the outbox-dlq command."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING)
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
