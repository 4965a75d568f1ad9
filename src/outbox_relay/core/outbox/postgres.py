"""
PostgreSQL Outbox Store

Claims use a single conditional UPDATE over a `FOR UPDATE SKIP LOCKED`
subselect, so concurrent processors never claim the same record.

Per-aggregate ordering is enforced by a NOT EXISTS guard on older
processing/failed records of the same aggregate_key. With several
processor instances a newer record can still be claimed while an older
one of the same aggregate is row-locked by another claimer; ordering is
strict per instance.

Outcome updates carry the claimant id, so an instance whose lease expired
cannot overwrite the outcome of the instance that re-claimed the record.
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional
from uuid import UUID, uuid4

import asyncpg
from pydantic import ValidationError

from ..database.adapter import DatabaseAdapter, affected_rows
from .errors import ClaimLostError, InvalidTransitionError, StoreError
from .models import OutboxEvent, OutboxStatistics, OutboxStatus, truncate_error
from .store import OutboxStore, check_retention_status

logger = logging.getLogger(__name__)

TABLE = "outbox_events"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    id UUID PRIMARY KEY,
    event_type VARCHAR(100) NOT NULL,
    payload TEXT NOT NULL,
    aggregate_key VARCHAR(255) NOT NULL,
    correlation_id VARCHAR(100) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_attempt_at TIMESTAMPTZ,
    next_retry_at TIMESTAMPTZ,
    published_at TIMESTAMPTZ,
    last_error TEXT,
    claimed_by VARCHAR(100),
    lease_expires_at TIMESTAMPTZ,
    CONSTRAINT {TABLE}_status_check CHECK (
        status IN ('pending', 'processing', 'published', 'failed', 'dead_lettered')
    )
);

CREATE INDEX IF NOT EXISTS idx_{TABLE}_status_created
    ON {TABLE} (status, created_at);
CREATE INDEX IF NOT EXISTS idx_{TABLE}_retry
    ON {TABLE} (next_retry_at) WHERE status = 'failed';
CREATE INDEX IF NOT EXISTS idx_{TABLE}_aggregate
    ON {TABLE} (aggregate_key, created_at);
CREATE INDEX IF NOT EXISTS idx_{TABLE}_published
    ON {TABLE} (published_at) WHERE status = 'published';
"""

COLUMNS = (
    "id, event_type, payload, aggregate_key, correlation_id, status, attempts, "
    "created_at, last_attempt_at, next_retry_at, published_at, last_error, "
    "claimed_by, lease_expires_at"
)

RETURNING_COLUMNS = ", ".join("o." + c.strip() for c in COLUMNS.split(","))

# Older outstanding records of the same aggregate block a claim.
_ORDER_GUARD = f"""
    NOT EXISTS (
        SELECT 1 FROM {TABLE} b
        WHERE b.aggregate_key = c.aggregate_key
          AND (b.created_at, b.id) < (c.created_at, c.id)
          AND b.status IN {{blocking}}
    )
"""
PENDING_GUARD = _ORDER_GUARD.format(blocking="('processing', 'failed')")
RETRY_GUARD = _ORDER_GUARD.format(blocking="('pending', 'processing', 'failed')")

CLAIM_PENDING_SQL = f"""
UPDATE {TABLE} AS o
SET status = 'processing', claimed_by = $2, lease_expires_at = $3
WHERE o.id IN (
    SELECT c.id FROM {TABLE} c
    WHERE c.status = 'pending'
      AND {PENDING_GUARD}
    ORDER BY c.created_at, c.id
    LIMIT $1
    FOR UPDATE SKIP LOCKED
)
AND o.status = 'pending'
RETURNING {RETURNING_COLUMNS}
"""

CLAIM_RETRYABLE_SQL = f"""
UPDATE {TABLE} AS o
SET status = 'processing', claimed_by = $2, lease_expires_at = $3
WHERE o.id IN (
    SELECT c.id FROM {TABLE} c
    WHERE (
        (c.status = 'failed' AND c.attempts < $5
         AND (c.next_retry_at IS NULL OR c.next_retry_at <= $4))
        OR (c.status = 'processing' AND c.lease_expires_at <= $4)
    )
      AND {RETRY_GUARD}
    ORDER BY c.created_at, c.id
    LIMIT $1
    FOR UPDATE SKIP LOCKED
)
AND (o.status = 'failed' OR (o.status = 'processing' AND o.lease_expires_at <= $4))
RETURNING {RETURNING_COLUMNS}
"""


def _claim_guard(param: int) -> str:
    return f"(${param}::varchar IS NULL OR claimed_by = ${param})"


def _row_to_event(row: Dict[str, Any]) -> OutboxEvent:
    return OutboxEvent(**row)


class PostgresOutboxStore(OutboxStore):
    """
    Outbox store backed by PostgreSQL through the DatabaseAdapter.

    Usage:
        store = PostgresOutboxStore(db, max_attempts=5)
        await store.ensure_schema()

        async with store.transaction() as conn:
            await conn.execute("UPDATE contacts ...")
            await store.insert(event, conn=conn)
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        max_attempts: int = 5,
        lease_timeout: timedelta = timedelta(minutes=5),
        instance_id: Optional[str] = None,
    ):
        self._db = db
        self.max_attempts = max_attempts
        self.lease_timeout = lease_timeout
        self.instance_id = instance_id or f"relay-{uuid4().hex[:8]}"

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise StoreError(f"Outbox {operation} failed: {e}") from e

    async def ensure_schema(self) -> None:
        with self._errors("schema setup"):
            await self._db.execute(SCHEMA_SQL)
        logger.info(f"Outbox schema ensured: {TABLE}")

    # -- claims -----------------------------------------------------------

    async def fetch_pending(
        self,
        batch_size: int,
        now: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> List[OutboxEvent]:
        claimant = claimant or self.instance_id
        with self._errors("fetch_pending"):
            rows = await self._db.fetch(
                CLAIM_PENDING_SQL,
                batch_size,
                claimant,
                now + self.lease_timeout,
            )
        return await self._claimed_events(rows, now, claimant)

    async def fetch_retryable(
        self,
        batch_size: int,
        now: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> List[OutboxEvent]:
        claimant = claimant or self.instance_id
        with self._errors("fetch_retryable"):
            rows = await self._db.fetch(
                CLAIM_RETRYABLE_SQL,
                batch_size,
                claimant,
                now + self.lease_timeout,
                now,
                self.max_attempts,
            )
        return await self._claimed_events(rows, now, claimant)

    async def _claimed_events(
        self,
        rows: List[Dict[str, Any]],
        now: datetime,
        claimant: str,
    ) -> List[OutboxEvent]:
        """Convert claimed rows one by one; rows that fail validation are dead-lettered."""
        events = []
        for row in rows:
            try:
                events.append(_row_to_event(row))
            except ValidationError as e:
                logger.error(f"Outbox event {row.get('id')} is not a valid record, dead-lettering: {e}")
                await self._quarantine(row.get("id"), f"invalid outbox record: {e}", now, claimant)
        # RETURNING does not preserve the subselect order
        events.sort(key=lambda e: (e.created_at, str(e.id)))
        return events

    async def _quarantine(self, event_id: Any, error: str, now: datetime, claimant: str) -> None:
        with self._errors("quarantine"):
            await self._db.execute(
                f"""
                UPDATE {TABLE}
                SET status = 'dead_lettered', last_attempt_at = $3, last_error = $2,
                    next_retry_at = NULL, claimed_by = NULL, lease_expires_at = NULL
                WHERE id = $1 AND status = 'processing' AND claimed_by = $4
                """,
                event_id,
                truncate_error(error),
                now,
                claimant,
            )

    # -- outcomes ---------------------------------------------------------

    async def _current(self, event_id: UUID) -> Optional[Dict[str, Any]]:
        return await self._db.fetchrow(
            f"SELECT status, claimed_by FROM {TABLE} WHERE id = $1", event_id
        )

    @staticmethod
    def _rejection(
        event_id: UUID,
        current: Optional[Dict[str, Any]],
        claimant: Optional[str],
        target: OutboxStatus,
    ) -> InvalidTransitionError:
        if current is None:
            return InvalidTransitionError(event_id, "missing", target.value)
        if current["status"] == OutboxStatus.PROCESSING.value and claimant is not None:
            return ClaimLostError(event_id, current["claimed_by"], claimant, target.value)
        return InvalidTransitionError(event_id, current["status"], target.value)

    async def mark_published(
        self,
        event_id: UUID,
        published_at: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> bool:
        with self._errors("mark_published"):
            status = await self._db.execute(
                f"""
                UPDATE {TABLE}
                SET status = 'published', attempts = attempts + 1,
                    last_attempt_at = $2, published_at = $2,
                    next_retry_at = NULL, last_error = NULL,
                    claimed_by = NULL, lease_expires_at = NULL
                WHERE id = $1 AND status = 'processing' AND {_claim_guard(3)}
                """,
                event_id,
                published_at,
                claimant,
            )
            if affected_rows(status):
                return True
            current = await self._current(event_id)
        if current and current["status"] == OutboxStatus.PUBLISHED.value:
            return True
        raise self._rejection(event_id, current, claimant, OutboxStatus.PUBLISHED)

    async def mark_failed(
        self,
        event_id: UUID,
        error: str,
        next_retry_at: Optional[datetime],
        attempted_at: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> OutboxStatus:
        with self._errors("mark_failed"):
            row = await self._db.fetchrow(
                f"""
                UPDATE {TABLE}
                SET attempts = attempts + 1,
                    status = CASE WHEN attempts + 1 >= $5 THEN 'dead_lettered' ELSE 'failed' END,
                    next_retry_at = CASE WHEN attempts + 1 >= $5 THEN NULL ELSE $3 END,
                    last_attempt_at = $4, last_error = $2,
                    claimed_by = NULL, lease_expires_at = NULL
                WHERE id = $1 AND status = 'processing' AND {_claim_guard(6)}
                RETURNING status
                """,
                event_id,
                truncate_error(error),
                next_retry_at or attempted_at,
                attempted_at,
                self.max_attempts,
                claimant,
            )
            if row:
                return OutboxStatus(row["status"])
            current = await self._current(event_id)
        raise self._rejection(event_id, current, claimant, OutboxStatus.FAILED)

    async def mark_dead_lettered(
        self,
        event_id: UUID,
        error: str,
        attempted_at: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> bool:
        with self._errors("mark_dead_lettered"):
            status = await self._db.execute(
                f"""
                UPDATE {TABLE}
                SET status = 'dead_lettered', attempts = attempts + 1,
                    last_attempt_at = $3, last_error = $2, next_retry_at = NULL,
                    claimed_by = NULL, lease_expires_at = NULL
                WHERE id = $1 AND status = 'processing' AND {_claim_guard(4)}
                """,
                event_id,
                truncate_error(error),
                attempted_at,
                claimant,
            )
            if affected_rows(status):
                return True
            current = await self._current(event_id)
        if current and current["status"] == OutboxStatus.DEAD_LETTERED.value:
            return True
        raise self._rejection(event_id, current, claimant, OutboxStatus.DEAD_LETTERED)

    async def release(
        self,
        event_id: UUID,
        retry_at: datetime,
        reason: str,
        *,
        claimant: Optional[str] = None,
    ) -> bool:
        with self._errors("release"):
            status = await self._db.execute(
                f"""
                UPDATE {TABLE}
                SET status = 'failed', next_retry_at = $2, last_error = $3,
                    claimed_by = NULL, lease_expires_at = NULL
                WHERE id = $1 AND status = 'processing' AND {_claim_guard(4)}
                """,
                event_id,
                retry_at,
                truncate_error(reason),
                claimant,
            )
        return affected_rows(status) > 0

    # -- retention --------------------------------------------------------

    async def delete_older_than(
        self,
        retention: timedelta,
        status: OutboxStatus = OutboxStatus.PUBLISHED,
        now: Optional[datetime] = None,
    ) -> int:
        check_retention_status(status)
        cutoff = (now or datetime.now(timezone.utc)) - retention
        with self._errors("cleanup"):
            result = await self._db.execute(
                f"DELETE FROM {TABLE} WHERE status = 'published' AND published_at < $1",
                cutoff,
            )
        return affected_rows(result)

    # -- writes and queries -----------------------------------------------

    def transaction(self):
        return self._db.transaction()

    async def insert(self, event: OutboxEvent, conn: Any = None) -> OutboxEvent:
        query = f"""
            INSERT INTO {TABLE} (
                id, event_type, payload, aggregate_key, correlation_id,
                status, attempts, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """
        args = (
            event.id,
            event.event_type,
            event.payload,
            event.aggregate_key,
            event.correlation_id,
            event.status.value,
            event.attempts,
            event.created_at,
        )
        with self._errors("insert"):
            if conn is not None:
                await conn.execute(query, *args)
            else:
                await self._db.execute(query, *args)
        return event

    async def get(self, event_id: UUID) -> Optional[OutboxEvent]:
        with self._errors("get"):
            row = await self._db.fetchrow(
                f"SELECT {COLUMNS} FROM {TABLE} WHERE id = $1", event_id
            )
        return _row_to_event(row) if row else None

    async def statistics(self, now: datetime) -> OutboxStatistics:
        with self._errors("statistics"):
            rows = await self._db.fetch(
                f"SELECT status, COUNT(*) AS count FROM {TABLE} GROUP BY status"
            )
            times = await self._db.fetchrow(
                f"""
                SELECT MIN(created_at) FILTER (WHERE status = 'pending') AS oldest_pending_at,
                       MAX(published_at) AS last_published_at
                FROM {TABLE}
                """
            )
        counts = {OutboxStatus(row["status"]): int(row["count"]) for row in rows}
        times = times or {}
        return OutboxStatistics(
            counts=counts,
            oldest_pending_at=times.get("oldest_pending_at"),
            last_published_at=times.get("last_published_at"),
        )

    async def list_by_status(
        self,
        status: OutboxStatus,
        limit: int = 100,
        offset: int = 0,
    ) -> List[OutboxEvent]:
        with self._errors("list"):
            rows = await self._db.fetch(
                f"""
                SELECT {COLUMNS} FROM {TABLE}
                WHERE status = $1
                ORDER BY created_at, id
                LIMIT $2 OFFSET $3
                """,
                OutboxStatus(status).value,
                limit,
                offset,
            )
        return [_row_to_event(row) for row in rows]

    async def delete(self, event_id: UUID, status: Optional[OutboxStatus] = None) -> bool:
        with self._errors("delete"):
            if status is None:
                result = await self._db.execute(f"DELETE FROM {TABLE} WHERE id = $1", event_id)
            else:
                result = await self._db.execute(
                    f"DELETE FROM {TABLE} WHERE id = $1 AND status = $2",
                    event_id,
                    OutboxStatus(status).value,
                )
        return affected_rows(result) > 0
