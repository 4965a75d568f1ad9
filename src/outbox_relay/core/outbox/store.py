"""
Outbox Store

Persistence contract for outbox records. Implementations must make claims
atomic: a record moves into PROCESSING through a single conditional update,
so at most one processor instance holds it at a time.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, AsyncContextManager, List, Optional
from uuid import UUID

from .models import OutboxEvent, OutboxStatistics, OutboxStatus


class OutboxStore(ABC):
    """
    Abstract outbox store.

    Claims carry the claiming instance id and a lease. A PROCESSING record
    whose lease has expired is treated as abandoned and may be re-claimed
    by fetch_retryable.

    `claimant` names the claiming instance and defaults to instance_id.
    Outcome writes given a claimant only apply while that claimant still
    holds the record; otherwise they raise ClaimLostError (release returns
    False). Without a claimant the ownership check is skipped.

    Per-aggregate ordering: neither fetch returns a record while an older
    record with the same aggregate_key is PROCESSING (lease unexpired) or
    FAILED.

    All methods raise StoreError when the backing store is unavailable.
    """

    max_attempts: int
    lease_timeout: timedelta
    instance_id: str

    @abstractmethod
    async def fetch_pending(
        self,
        batch_size: int,
        now: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> List[OutboxEvent]:
        """Claim up to batch_size PENDING records, oldest first."""

    @abstractmethod
    async def fetch_retryable(
        self,
        batch_size: int,
        now: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> List[OutboxEvent]:
        """
        Claim FAILED records that are due (next_retry_at <= now and
        attempts < max_attempts) plus PROCESSING records with an expired
        lease, oldest first.
        """

    @abstractmethod
    async def mark_published(
        self,
        event_id: UUID,
        published_at: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> bool:
        """
        PROCESSING -> PUBLISHED, recording the attempt.

        Returns True when the record is (now or already) PUBLISHED.
        """

    @abstractmethod
    async def mark_failed(
        self,
        event_id: UUID,
        error: str,
        next_retry_at: Optional[datetime],
        attempted_at: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> OutboxStatus:
        """
        PROCESSING -> FAILED with attempts + 1.

        When the incremented count reaches max_attempts the record goes to
        DEAD_LETTERED instead. Returns the resulting status.
        """

    @abstractmethod
    async def mark_dead_lettered(
        self,
        event_id: UUID,
        error: str,
        attempted_at: datetime,
        *,
        claimant: Optional[str] = None,
    ) -> bool:
        """PROCESSING -> DEAD_LETTERED, recording the attempt."""

    @abstractmethod
    async def release(
        self,
        event_id: UUID,
        retry_at: datetime,
        reason: str,
        *,
        claimant: Optional[str] = None,
    ) -> bool:
        """PROCESSING -> FAILED without consuming an attempt."""

    @abstractmethod
    async def delete_older_than(
        self,
        retention: timedelta,
        status: OutboxStatus = OutboxStatus.PUBLISHED,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Delete PUBLISHED records whose published_at is older than now - retention.

        Raises:
            ValueError: for any status other than PUBLISHED
        """

    @abstractmethod
    async def insert(self, event: OutboxEvent, conn: Any = None) -> OutboxEvent:
        """Insert a new record, inside `conn`'s transaction when given."""

    @abstractmethod
    async def get(self, event_id: UUID) -> Optional[OutboxEvent]:
        ...

    @abstractmethod
    def transaction(self) -> AsyncContextManager[Any]:
        """Unit of work shared by the business mutation and its outbox rows."""

    @abstractmethod
    async def statistics(self, now: datetime) -> OutboxStatistics:
        ...

    @abstractmethod
    async def list_by_status(
        self,
        status: OutboxStatus,
        limit: int = 100,
        offset: int = 0,
    ) -> List[OutboxEvent]:
        ...

    @abstractmethod
    async def delete(self, event_id: UUID, status: Optional[OutboxStatus] = None) -> bool:
        """Delete one record, optionally only when it is in `status`."""


def check_retention_status(status: OutboxStatus) -> None:
    if OutboxStatus(status) != OutboxStatus.PUBLISHED:
        raise ValueError(
            f"Only published records may be deleted by retention cleanup, got {status}"
        )
