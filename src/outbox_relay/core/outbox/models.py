"""
Outbox Models

The persisted outbox record, its status enum and aggregate statistics.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..correlation.context import validate_correlation_id

if TYPE_CHECKING:
    from ..correlation import CorrelationContext

MAX_EVENT_TYPE_LENGTH = 100
MAX_ERROR_LENGTH = 1000


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class OutboxStatus(str, Enum):
    """Status of an outbox event."""
    PENDING = "pending"
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


# Allowed status moves. PUBLISHED and DEAD_LETTERED are terminal.
TRANSITIONS: Dict[OutboxStatus, FrozenSet[OutboxStatus]] = {
    OutboxStatus.PENDING: frozenset({OutboxStatus.PROCESSING}),
    OutboxStatus.PROCESSING: frozenset({
        OutboxStatus.PUBLISHED,
        OutboxStatus.FAILED,
        OutboxStatus.DEAD_LETTERED,
        # lease expiry: another instance re-claims the record
        OutboxStatus.PROCESSING,
    }),
    OutboxStatus.FAILED: frozenset({OutboxStatus.PROCESSING, OutboxStatus.DEAD_LETTERED}),
    OutboxStatus.PUBLISHED: frozenset(),
    OutboxStatus.DEAD_LETTERED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OutboxStatus.PUBLISHED, OutboxStatus.DEAD_LETTERED})


def can_transition(current: OutboxStatus, target: OutboxStatus) -> bool:
    return target in TRANSITIONS[current]


def truncate_error(message: str) -> str:
    message = (message or "").strip() or "unknown error"
    return message[:MAX_ERROR_LENGTH]


class OutboxEvent(BaseModel):
    """
    An outbox record: one domain event awaiting reliable delivery.

    Written in the same unit of work as the business mutation it describes,
    mutated only by the outbox processor, deleted only by retention cleanup.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    event_type: str = Field(..., min_length=1, max_length=MAX_EVENT_TYPE_LENGTH)
    payload: str
    aggregate_key: str = Field(..., min_length=1)
    correlation_id: str = Field(..., min_length=1, max_length=100)

    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = Field(0, ge=0)

    created_at: datetime = Field(default_factory=_utcnow)
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    last_error: Optional[str] = None

    claimed_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @field_validator("event_type", "correlation_id", "aggregate_key")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("correlation_id")
    @classmethod
    def _printable_correlation_id(cls, value: str) -> str:
        return validate_correlation_id(value)

    @classmethod
    def create(
        cls,
        ctx: "CorrelationContext",
        event_type: str,
        data: Any,
        aggregate_key: str,
        created_at: Optional[datetime] = None,
    ) -> "OutboxEvent":
        """
        Build a new PENDING record for the operation described by `ctx`.

        Raises:
            ValueError: if `data` is not JSON-serializable
        """
        try:
            payload = json.dumps(data, separators=(",", ":"), default=_json_default)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Event data for {event_type} is not serializable: {e}") from e

        return cls(
            event_type=event_type,
            payload=payload,
            aggregate_key=str(aggregate_key),
            correlation_id=ctx.correlation_id,
            created_at=created_at or _utcnow(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def lease_expired(self, now: datetime) -> bool:
        return (
            self.status == OutboxStatus.PROCESSING
            and self.lease_expires_at is not None
            and self.lease_expires_at <= now
        )

    def data(self) -> Any:
        """Decode the payload."""
        return json.loads(self.payload)

    def log_fields(self) -> Dict[str, Any]:
        return {
            "event_id": str(self.id),
            "event_type": self.event_type,
            "aggregate_key": self.aggregate_key,
            "attempts": self.attempts,
            "status": self.status.value,
        }


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class OutboxStatistics(BaseModel):
    """Point-in-time summary of the outbox table."""

    counts: Dict[OutboxStatus, int] = Field(default_factory=dict)
    oldest_pending_at: Optional[datetime] = None
    last_published_at: Optional[datetime] = None

    def count(self, status: OutboxStatus) -> int:
        return self.counts.get(status, 0)

    @property
    def pending(self) -> int:
        return self.count(OutboxStatus.PENDING)

    @property
    def failed(self) -> int:
        return self.count(OutboxStatus.FAILED)

    @property
    def dead_lettered(self) -> int:
        return self.count(OutboxStatus.DEAD_LETTERED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": {status.value: self.count(status) for status in OutboxStatus},
            "oldest_pending_at": self.oldest_pending_at.isoformat() if self.oldest_pending_at else None,
            "last_published_at": self.last_published_at.isoformat() if self.last_published_at else None,
        }
