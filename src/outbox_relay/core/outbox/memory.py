"""
In-Memory Outbox Store

asyncio.Lock-guarded store for tests and single-process development.
Transactions stage inserts and apply them on successful exit.
"""

import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set
from uuid import UUID, uuid4

from .errors import ClaimLostError, InvalidTransitionError
from .models import OutboxEvent, OutboxStatistics, OutboxStatus, can_transition, truncate_error
from .store import OutboxStore, check_retention_status


class MemoryTransaction:
    """Staged writes of one unit of work."""

    def __init__(self):
        self.staged: List[OutboxEvent] = []
        self.committed = False


class InMemoryOutboxStore(OutboxStore):

    def __init__(
        self,
        max_attempts: int = 5,
        lease_timeout: timedelta = timedelta(minutes=5),
        instance_id: Optional[str] = None,
    ):
        self.max_attempts = max_attempts
        self.lease_timeout = lease_timeout
        self.instance_id = instance_id or f"memory-{uuid4().hex[:8]}"
        self._records: Dict[UUID, OutboxEvent] = {}
        self._order: Dict[UUID, int] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    # -- helpers ----------------------------------------------------------

    def _sorted(self) -> List[OutboxEvent]:
        return sorted(
            self._records.values(),
            key=lambda e: (e.created_at, self._order[e.id]),
        )

    def _require(self, event_id: UUID) -> OutboxEvent:
        record = self._records.get(event_id)
        if record is None:
            raise KeyError(f"Outbox event {event_id} not found")
        return record

    def _move(self, record: OutboxEvent, target: OutboxStatus) -> None:
        if not can_transition(record.status, target):
            raise InvalidTransitionError(record.id, record.status.value, target.value)
        record.status = target

    def _claim(self, record: OutboxEvent, now: datetime, claimant: Optional[str]) -> OutboxEvent:
        self._move(record, OutboxStatus.PROCESSING)
        record.claimed_by = claimant or self.instance_id
        record.lease_expires_at = now + self.lease_timeout
        return record.model_copy(deep=True)

    @staticmethod
    def _check_claim(record: OutboxEvent, claimant: Optional[str], target: OutboxStatus) -> None:
        if (
            claimant is not None
            and record.status == OutboxStatus.PROCESSING
            and record.claimed_by != claimant
        ):
            raise ClaimLostError(record.id, record.claimed_by, claimant, target.value)

    def _add(self, event: OutboxEvent) -> OutboxEvent:
        if event.id in self._records:
            raise ValueError(f"Outbox event {event.id} already exists")
        stored = event.model_copy(deep=True)
        self._records[stored.id] = stored
        self._order[stored.id] = next(self._seq)
        return stored.model_copy(deep=True)

    # -- claims -----------------------------------------------------------

    async def fetch_pending(
        self,
        batch_size: int,
        now: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> List[OutboxEvent]:
        async with self._lock:
            claimed: List[OutboxEvent] = []
            blocked: Set[str] = set()

            for record in self._sorted():
                key = record.aggregate_key
                if record.status in (OutboxStatus.PROCESSING, OutboxStatus.FAILED):
                    blocked.add(key)
                    continue
                if record.status != OutboxStatus.PENDING:
                    continue
                if key in blocked or len(claimed) >= batch_size:
                    # an older record of this aggregate is still outstanding
                    blocked.add(key)
                    continue
                claimed.append(self._claim(record, now, claimant))

            return claimed

    async def fetch_retryable(
        self,
        batch_size: int,
        now: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> List[OutboxEvent]:
        async with self._lock:
            claimed: List[OutboxEvent] = []
            blocked: Set[str] = set()

            for record in self._sorted():
                key = record.aggregate_key
                if record.is_terminal:
                    continue

                eligible = (
                    record.status == OutboxStatus.FAILED
                    and record.attempts < self.max_attempts
                    and (record.next_retry_at is None or record.next_retry_at <= now)
                ) or record.lease_expired(now)

                if not eligible or key in blocked or len(claimed) >= batch_size:
                    blocked.add(key)
                    continue
                claimed.append(self._claim(record, now, claimant))

            return claimed

    # -- outcomes ---------------------------------------------------------

    async def mark_published(
        self,
        event_id: UUID,
        published_at: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            record = self._require(event_id)
            if record.status == OutboxStatus.PUBLISHED:
                return True
            self._check_claim(record, claimant, OutboxStatus.PUBLISHED)
            self._move(record, OutboxStatus.PUBLISHED)
            record.attempts += 1
            record.last_attempt_at = published_at
            record.published_at = published_at
            record.next_retry_at = None
            record.last_error = None
            record.claimed_by = None
            record.lease_expires_at = None
            return True

    async def mark_failed(
        self,
        event_id: UUID,
        error: str,
        next_retry_at: Optional[datetime],
        attempted_at: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> OutboxStatus:
        async with self._lock:
            record = self._require(event_id)
            self._check_claim(record, claimant, OutboxStatus.FAILED)
            attempts = record.attempts + 1
            target = (
                OutboxStatus.DEAD_LETTERED
                if attempts >= self.max_attempts
                else OutboxStatus.FAILED
            )
            self._move(record, target)
            record.attempts = attempts
            record.last_attempt_at = attempted_at
            record.last_error = truncate_error(error)
            record.next_retry_at = (
                None if target == OutboxStatus.DEAD_LETTERED else (next_retry_at or attempted_at)
            )
            record.claimed_by = None
            record.lease_expires_at = None
            return target

    async def mark_dead_lettered(
        self,
        event_id: UUID,
        error: str,
        attempted_at: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            record = self._require(event_id)
            if record.status == OutboxStatus.DEAD_LETTERED:
                return True
            self._check_claim(record, claimant, OutboxStatus.DEAD_LETTERED)
            self._move(record, OutboxStatus.DEAD_LETTERED)
            record.attempts += 1
            record.last_attempt_at = attempted_at
            record.last_error = truncate_error(error)
            record.next_retry_at = None
            record.claimed_by = None
            record.lease_expires_at = None
            return True

    async def release(
        self,
        event_id: UUID,
        retry_at: datetime,
        reason: str,
        *,
        claimant: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            record = self._require(event_id)
            if record.status != OutboxStatus.PROCESSING:
                return False
            if claimant is not None and record.claimed_by != claimant:
                return False
            self._move(record, OutboxStatus.FAILED)
            record.next_retry_at = retry_at
            record.last_error = truncate_error(reason)
            record.claimed_by = None
            record.lease_expires_at = None
            return True

    # -- retention --------------------------------------------------------

    async def delete_older_than(
        self,
        retention: timedelta,
        status: OutboxStatus = OutboxStatus.PUBLISHED,
        now: Optional[datetime] = None,
    ) -> int:
        check_retention_status(status)
        cutoff = (now or datetime.now(timezone.utc)) - retention
        async with self._lock:
            doomed = [
                record.id
                for record in self._records.values()
                if record.status == OutboxStatus.PUBLISHED
                and record.published_at is not None
                and record.published_at < cutoff
            ]
            for event_id in doomed:
                del self._records[event_id]
                del self._order[event_id]
            return len(doomed)

    # -- writes and queries -----------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        tx = MemoryTransaction()
        yield tx
        async with self._lock:
            for event in tx.staged:
                self._add(event)
        tx.committed = True

    async def insert(self, event: OutboxEvent, conn: Any = None) -> OutboxEvent:
        if event.status != OutboxStatus.PENDING:
            raise ValueError("New outbox records must be pending")
        if isinstance(conn, MemoryTransaction):
            conn.staged.append(event.model_copy(deep=True))
            return event
        async with self._lock:
            return self._add(event)

    async def get(self, event_id: UUID) -> Optional[OutboxEvent]:
        async with self._lock:
            record = self._records.get(event_id)
            return record.model_copy(deep=True) if record else None

    async def statistics(self, now: datetime) -> OutboxStatistics:
        async with self._lock:
            counts: Dict[OutboxStatus, int] = {}
            oldest_pending = None
            last_published = None
            for record in self._records.values():
                counts[record.status] = counts.get(record.status, 0) + 1
                if record.status == OutboxStatus.PENDING:
                    if oldest_pending is None or record.created_at < oldest_pending:
                        oldest_pending = record.created_at
                if record.published_at is not None:
                    if last_published is None or record.published_at > last_published:
                        last_published = record.published_at
            return OutboxStatistics(
                counts=counts,
                oldest_pending_at=oldest_pending,
                last_published_at=last_published,
            )

    async def list_by_status(
        self,
        status: OutboxStatus,
        limit: int = 100,
        offset: int = 0,
    ) -> List[OutboxEvent]:
        async with self._lock:
            matches = [r for r in self._sorted() if r.status == status]
            return [r.model_copy(deep=True) for r in matches[offset:offset + limit]]

    async def delete(self, event_id: UUID, status: Optional[OutboxStatus] = None) -> bool:
        async with self._lock:
            record = self._records.get(event_id)
            if record is None:
                return False
            if status is not None and record.status != status:
                return False
            del self._records[event_id]
            del self._order[event_id]
            return True

    def __len__(self) -> int:
        return len(self._records)
