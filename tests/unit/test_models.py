"""
Unit tests for the outbox record model and its state machine.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from outbox_relay.core.correlation import CorrelationContext
from outbox_relay.core.outbox.models import (
    MAX_ERROR_LENGTH,
    OutboxEvent,
    OutboxStatistics,
    OutboxStatus,
    TERMINAL_STATUSES,
    can_transition,
    truncate_error,
)


class TestOutboxEventCreate:
    """Tests for OutboxEvent.create."""

    def test_create_is_pending_with_zero_attempts(self, ctx):
        """A new record starts PENDING with no attempts and no publish time."""
        event = OutboxEvent.create(ctx, "ContactCreated", {"id": "c-1"}, "c-1")

        assert event.status == OutboxStatus.PENDING
        assert event.attempts == 0
        assert event.published_at is None
        assert event.next_retry_at is None
        assert event.claimed_by is None

    def test_create_copies_correlation_id(self, ctx):
        """The record carries the correlation id of the operation."""
        event = OutboxEvent.create(ctx, "ContactCreated", {"id": "c-1"}, "c-1")
        assert event.correlation_id == ctx.correlation_id

    def test_payload_is_compact_json(self, ctx):
        """Payload is stored as compact JSON text."""
        event = OutboxEvent.create(ctx, "ContactCreated", {"id": "c-1", "n": 2}, "c-1")
        assert event.payload == '{"id":"c-1","n":2}'
        assert event.data() == {"id": "c-1", "n": 2}

    def test_payload_serializes_uuid_and_datetime(self, ctx):
        """UUIDs and datetimes in event data are stored as strings."""
        contact_id = uuid4()
        when = datetime(2026, 1, 1, tzinfo=timezone.utc)
        event = OutboxEvent.create(ctx, "ContactUpdated", {"id": contact_id, "at": when}, str(contact_id))

        assert event.data() == {"id": str(contact_id), "at": when.isoformat()}

    def test_unserializable_data_rejected(self, ctx):
        """Data that cannot be JSON encoded raises ValueError."""
        with pytest.raises(ValueError):
            OutboxEvent.create(ctx, "ContactCreated", {"obj": object()}, "c-1")

    def test_ids_are_unique(self, ctx):
        """Every record gets its own id."""
        ids = {OutboxEvent.create(ctx, "ContactCreated", {}, "c-1").id for _ in range(50)}
        assert len(ids) == 50

    def test_aggregate_key_coerced_to_string(self, ctx):
        event = OutboxEvent.create(ctx, "ContactCreated", {}, 42)
        assert event.aggregate_key == "42"


class TestOutboxEventValidation:
    """Field constraints on OutboxEvent."""

    def test_blank_event_type_rejected(self):
        with pytest.raises(ValidationError):
            OutboxEvent(event_type="   ", payload="{}", aggregate_key="k", correlation_id="c")

    def test_event_type_max_length(self):
        """Event types longer than 100 characters are rejected."""
        with pytest.raises(ValidationError):
            OutboxEvent(event_type="X" * 101, payload="{}", aggregate_key="k", correlation_id="c")

    def test_correlation_id_max_length(self):
        with pytest.raises(ValidationError):
            OutboxEvent(event_type="ContactCreated", payload="{}", aggregate_key="k", correlation_id="c" * 101)

    def test_non_printable_correlation_id_rejected(self):
        """Only ids a CorrelationContext would accept can be stored."""
        with pytest.raises(ValidationError):
            OutboxEvent(event_type="ContactCreated", payload="{}", aggregate_key="k", correlation_id="abc\x01def")

    def test_negative_attempts_rejected_on_assignment(self):
        """Assignment is validated too."""
        event = OutboxEvent(event_type="ContactCreated", payload="{}", aggregate_key="k", correlation_id="c")
        with pytest.raises(ValidationError):
            event.attempts = -1


class TestStateMachine:
    """Tests for the allowed status transitions."""

    def test_pending_only_moves_to_processing(self):
        assert can_transition(OutboxStatus.PENDING, OutboxStatus.PROCESSING)
        assert not can_transition(OutboxStatus.PENDING, OutboxStatus.PUBLISHED)
        assert not can_transition(OutboxStatus.PENDING, OutboxStatus.FAILED)

    def test_processing_outcomes(self):
        for target in (OutboxStatus.PUBLISHED, OutboxStatus.FAILED, OutboxStatus.DEAD_LETTERED):
            assert can_transition(OutboxStatus.PROCESSING, target)

    def test_failed_can_be_reclaimed_or_dead_lettered(self):
        assert can_transition(OutboxStatus.FAILED, OutboxStatus.PROCESSING)
        assert can_transition(OutboxStatus.FAILED, OutboxStatus.DEAD_LETTERED)
        assert not can_transition(OutboxStatus.FAILED, OutboxStatus.PUBLISHED)

    def test_terminal_statuses_have_no_exits(self):
        """PUBLISHED and DEAD_LETTERED never change again."""
        for terminal in TERMINAL_STATUSES:
            for target in OutboxStatus:
                assert not can_transition(terminal, target)

    def test_lease_expired(self):
        """Only a PROCESSING record past its lease is expired."""
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        event = OutboxEvent(event_type="ContactCreated", payload="{}", aggregate_key="k", correlation_id="c")
        event.status = OutboxStatus.PROCESSING
        event.lease_expires_at = now - timedelta(seconds=1)
        assert event.lease_expired(now)

        event.lease_expires_at = now + timedelta(seconds=1)
        assert not event.lease_expired(now)

        event.status = OutboxStatus.FAILED
        event.lease_expires_at = now - timedelta(seconds=1)
        assert not event.lease_expired(now)


class TestTruncateError:

    def test_long_errors_truncated(self):
        assert len(truncate_error("x" * 5000)) == MAX_ERROR_LENGTH

    def test_empty_error_gets_placeholder(self):
        assert truncate_error("") == "unknown error"
        assert truncate_error(None) == "unknown error"


class TestOutboxStatistics:

    def test_counts_default_to_zero(self):
        stats = OutboxStatistics(counts={OutboxStatus.PENDING: 3})
        assert stats.pending == 3
        assert stats.failed == 0
        assert stats.dead_lettered == 0

    def test_to_dict_lists_every_status(self):
        stats = OutboxStatistics(counts={OutboxStatus.PUBLISHED: 2})
        data = stats.to_dict()
        assert set(data["counts"]) == {s.value for s in OutboxStatus}
        assert data["counts"]["published"] == 2
        assert data["oldest_pending_at"] is None
