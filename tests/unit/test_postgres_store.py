"""
Unit tests for the PostgreSQL outbox store against a scripted adapter.

These pin the SQL contract (conditional updates, parameters, error
mapping); claim behaviour against a live database is covered by the
in-memory store tests, which share the same semantics.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from uuid import uuid4

import asyncpg
import pytest

from outbox_relay.core.outbox.errors import ClaimLostError, InvalidTransitionError, StoreError
from outbox_relay.core.outbox.models import OutboxStatus
from outbox_relay.core.outbox.postgres import (
    CLAIM_PENDING_SQL,
    CLAIM_RETRYABLE_SQL,
    PostgresOutboxStore,
)


class ScriptedDatabase:
    """DatabaseAdapter double returning queued results per method."""

    def __init__(self):
        self.calls = []
        self.results = {"fetch": [], "fetchrow": [], "execute": []}
        self.error = None
        self.conn_calls = []

    def queue(self, method, *values):
        self.results[method].extend(values)

    async def _call(self, method, query, args):
        self.calls.append((method, query, args))
        if self.error is not None:
            raise self.error
        queued = self.results[method]
        if queued:
            return queued.pop(0)
        return {"fetch": [], "fetchrow": None, "execute": "UPDATE 0"}[method]

    async def fetch(self, query, *args):
        return await self._call("fetch", query, args)

    async def fetchrow(self, query, *args):
        return await self._call("fetchrow", query, args)

    async def execute(self, query, *args):
        return await self._call("execute", query, args)

    @asynccontextmanager
    async def transaction(self):
        db = self

        class _Conn:
            async def execute(self, query, *args):
                db.conn_calls.append((query, args))
                return "INSERT 0 1"

        yield _Conn()


def _row(event, **changes):
    row = event.model_dump()
    row["status"] = event.status.value
    row.update(changes)
    return row


@pytest.fixture
def db():
    return ScriptedDatabase()


@pytest.fixture
def pg_store(db):
    return PostgresOutboxStore(db, max_attempts=5, lease_timeout=timedelta(minutes=5), instance_id="relay-a")


class TestClaimQueries:
    """Tests for the claim statements."""

    def test_claims_skip_locked_rows(self):
        for sql in (CLAIM_PENDING_SQL, CLAIM_RETRYABLE_SQL):
            assert "FOR UPDATE SKIP LOCKED" in sql
            assert "RETURNING" in sql
            assert "NOT EXISTS" in sql

    def test_pending_guard_blocks_on_processing_and_failed(self):
        assert "b.status IN ('processing', 'failed')" in CLAIM_PENDING_SQL

    def test_retry_claim_covers_expired_leases(self):
        assert "lease_expires_at <= $4" in CLAIM_RETRYABLE_SQL
        assert "attempts < $5" in CLAIM_RETRYABLE_SQL

    @pytest.mark.asyncio
    async def test_fetch_pending_parameters(self, pg_store, db, make_event, clock):
        later = make_event(aggregate_key="b", offset=5)
        earlier = make_event(aggregate_key="a")
        db.queue(
            "fetch",
            [_row(later, status="processing"), _row(earlier, status="processing")],
        )

        batch = await pg_store.fetch_pending(25, clock.now)

        method, query, args = db.calls[0]
        assert query == CLAIM_PENDING_SQL
        assert args == (25, "relay-a", clock.now + timedelta(minutes=5))
        assert [e.id for e in batch] == [earlier.id, later.id]
        assert all(e.status == OutboxStatus.PROCESSING for e in batch)

    @pytest.mark.asyncio
    async def test_fetch_retryable_parameters(self, pg_store, db, clock):
        await pg_store.fetch_retryable(10, clock.now)

        _, query, args = db.calls[0]
        assert query == CLAIM_RETRYABLE_SQL
        assert args == (10, "relay-a", clock.now + timedelta(minutes=5), clock.now, 5)


class TestOutcomeUpdates:
    """Outcome updates only apply to PROCESSING rows."""

    @pytest.mark.asyncio
    async def test_mark_published(self, pg_store, db, clock):
        event_id = uuid4()
        db.queue("execute", "UPDATE 1")

        assert await pg_store.mark_published(event_id, clock.now)
        _, query, args = db.calls[0]
        assert "status = 'processing'" in query
        assert "attempts = attempts + 1" in query
        assert "claimed_by = $3" in query
        assert args == (event_id, clock.now, None)

    @pytest.mark.asyncio
    async def test_mark_published_already_published(self, pg_store, db, clock):
        db.queue("fetchrow", {"status": "published", "claimed_by": None})
        assert await pg_store.mark_published(uuid4(), clock.now)

    @pytest.mark.asyncio
    async def test_mark_published_from_wrong_status(self, pg_store, db, clock):
        db.queue("fetchrow", {"status": "pending", "claimed_by": None})
        with pytest.raises(InvalidTransitionError) as exc_info:
            await pg_store.mark_published(uuid4(), clock.now)
        assert exc_info.value.current == "pending"

    @pytest.mark.asyncio
    async def test_mark_failed_returns_resulting_status(self, pg_store, db, clock):
        db.queue("fetchrow", {"status": "dead_lettered"})
        retry_at = clock.now + timedelta(minutes=1)

        status = await pg_store.mark_failed(uuid4(), "x" * 2000, retry_at, clock.now)

        assert status == OutboxStatus.DEAD_LETTERED
        _, query, args = db.calls[0]
        assert "attempts + 1 >= $5" in query
        assert len(args[1]) == 1000
        assert args[2] == retry_at
        assert args[4] == 5

    @pytest.mark.asyncio
    async def test_mark_failed_missing_row(self, pg_store, db, clock):
        with pytest.raises(InvalidTransitionError) as exc_info:
            await pg_store.mark_failed(uuid4(), "boom", clock.now, clock.now)
        assert exc_info.value.current == "missing"

    @pytest.mark.asyncio
    async def test_mark_dead_lettered_idempotent(self, pg_store, db, clock):
        db.queue("fetchrow", {"status": "dead_lettered", "claimed_by": None})
        assert await pg_store.mark_dead_lettered(uuid4(), "bad", clock.now)

    @pytest.mark.asyncio
    async def test_release(self, pg_store, db, clock):
        db.queue("execute", "UPDATE 1", "UPDATE 0")
        assert await pg_store.release(uuid4(), clock.now, "shutdown")
        assert not await pg_store.release(uuid4(), clock.now, "shutdown")
        assert "attempts" not in db.calls[0][1]


class TestClaimOwnership:
    """Outcome updates are conditional on the claimant still holding the row."""

    @pytest.mark.asyncio
    async def test_fetch_uses_given_claimant(self, pg_store, db, clock):
        await pg_store.fetch_pending(5, clock.now, claimant="relay-b")
        assert db.calls[0][2][1] == "relay-b"

    @pytest.mark.asyncio
    async def test_claimant_passed_to_every_outcome(self, pg_store, db, clock):
        event_id = uuid4()
        db.queue("execute", "UPDATE 1", "UPDATE 1", "UPDATE 1")
        db.queue("fetchrow", {"status": "failed"})

        await pg_store.mark_published(event_id, clock.now, claimant="relay-a")
        await pg_store.mark_failed(event_id, "timeout", clock.now, clock.now, claimant="relay-a")
        await pg_store.mark_dead_lettered(event_id, "too large", clock.now, claimant="relay-a")
        await pg_store.release(event_id, clock.now, "shutdown", claimant="relay-a")

        for _, query, args in db.calls:
            assert "::varchar IS NULL OR claimed_by = $" in query
            assert args[-1] == "relay-a"

    @pytest.mark.asyncio
    async def test_lost_claim_raises(self, pg_store, db, clock):
        db.queue("fetchrow", None, {"status": "processing", "claimed_by": "relay-b"})

        with pytest.raises(ClaimLostError) as exc_info:
            await pg_store.mark_failed(uuid4(), "timeout", clock.now, clock.now, claimant="relay-a")

        assert exc_info.value.holder == "relay-b"
        assert exc_info.value.claimant == "relay-a"

    @pytest.mark.asyncio
    async def test_processing_row_without_claimant_is_plain_transition_error(self, pg_store, db, clock):
        db.queue("fetchrow", {"status": "processing", "claimed_by": "relay-b"})

        with pytest.raises(InvalidTransitionError) as exc_info:
            await pg_store.mark_published(uuid4(), clock.now)
        assert not isinstance(exc_info.value, ClaimLostError)


class TestClaimedRowValidation:

    @pytest.mark.asyncio
    async def test_invalid_row_dead_lettered_rest_returned(self, pg_store, db, make_event, clock):
        """One corrupt claimed row does not cost the rest of the batch."""
        good = make_event(aggregate_key="a")
        bad = make_event(aggregate_key="b", offset=1)
        db.queue(
            "fetch",
            [
                _row(bad, status="processing", correlation_id="abc\x01def"),
                _row(good, status="processing"),
            ],
        )

        batch = await pg_store.fetch_pending(10, clock.now)

        assert [e.id for e in batch] == [good.id]
        method, query, args = db.calls[1]
        assert method == "execute"
        assert "status = 'dead_lettered'" in query
        assert args[0] == bad.id
        assert args[1].startswith("invalid outbox record")
        assert args[3] == "relay-a"


class TestErrorMapping:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            asyncpg.PostgresError("relation does not exist"),
            asyncpg.InterfaceError("pool is closed"),
            ConnectionRefusedError("refused"),
        ],
    )
    async def test_driver_errors_become_store_errors(self, pg_store, db, clock, error):
        db.error = error
        with pytest.raises(StoreError):
            await pg_store.fetch_pending(10, clock.now)


class TestRetentionAndWrites:

    @pytest.mark.asyncio
    async def test_delete_older_than(self, pg_store, db, clock):
        db.queue("execute", "DELETE 4")

        deleted = await pg_store.delete_older_than(timedelta(days=7), OutboxStatus.PUBLISHED, clock.now)

        assert deleted == 4
        _, query, args = db.calls[0]
        assert "status = 'published'" in query
        assert args == (clock.now - timedelta(days=7),)

    @pytest.mark.asyncio
    async def test_delete_older_than_rejects_other_status(self, pg_store, db, clock):
        with pytest.raises(ValueError):
            await pg_store.delete_older_than(timedelta(days=7), OutboxStatus.FAILED, clock.now)
        assert db.calls == []

    @pytest.mark.asyncio
    async def test_insert_uses_transaction_connection(self, pg_store, db, make_event):
        event = make_event()
        async with pg_store.transaction() as conn:
            await pg_store.insert(event, conn=conn)

        assert db.calls == []
        query, args = db.conn_calls[0]
        assert "INSERT INTO outbox_events" in query
        assert args[0] == event.id
        assert args[5] == "pending"

    @pytest.mark.asyncio
    async def test_statistics(self, pg_store, db, clock):
        db.queue("fetch", [{"status": "pending", "count": 3}, {"status": "published", "count": 7}])
        db.queue("fetchrow", {"oldest_pending_at": clock.now, "last_published_at": None})

        stats = await pg_store.statistics(clock.now)

        assert stats.pending == 3
        assert stats.count(OutboxStatus.PUBLISHED) == 7
        assert stats.oldest_pending_at == clock.now
