"""
Outbox Processor

Background worker that drains the outbox to the message broker.

Each tick runs three independent phases:
1. pending  - claim new records and publish them
2. retry    - claim due failed records (and records with an expired lease)
3. cleanup  - delete old published records, at most once per cleanup interval

A phase that fails is reported in its PhaseResult; the other phases still
run. When every attempted phase failed because the store is unavailable,
the loop waits the error backoff instead of the normal interval.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Protocol, Set, Union
from uuid import uuid4

from ..config import OutboxSettings
from ..correlation import CorrelationContext
from ..observability import (
    OUTBOX_CLEANUP_DELETED,
    OUTBOX_DEAD_LETTERED,
    OUTBOX_FAILED,
    OUTBOX_PUBLISHED,
    OUTBOX_TICK_DURATION,
    record_counter,
    record_histogram,
)
from .errors import InvalidTransitionError, PermanentPublishError, StoreError
from .models import OutboxEvent, OutboxStatus
from .retry import RetryPolicy
from .store import OutboxStore

logger = logging.getLogger(__name__)

PHASE_PENDING = "pending"
PHASE_RETRY = "retry"
PHASE_CLEANUP = "cleanup"

Fetch = Callable[..., Awaitable[List[OutboxEvent]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventPublisher(Protocol):
    """What the processor needs from a broker publisher."""

    async def publish(self, event: OutboxEvent, ctx: CorrelationContext): ...

    async def close(self, timeout: Optional[float] = None) -> None: ...


@dataclass
class PhaseResult:
    """Outcome of one processor phase."""

    phase: str
    claimed: int = 0
    published: int = 0
    failed: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    released: int = 0
    deleted: int = 0
    skipped: bool = False
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def store_failed(self) -> bool:
        return isinstance(self.error, StoreError)


@dataclass
class TickResult:
    """Outcome of one processor tick."""

    pending: PhaseResult
    retry: PhaseResult
    cleanup: PhaseResult
    duration_seconds: float = 0.0

    @property
    def phases(self) -> List[PhaseResult]:
        return [self.pending, self.retry, self.cleanup]

    @property
    def store_unavailable(self) -> bool:
        attempted = [p for p in self.phases if not p.skipped]
        return bool(attempted) and all(p.store_failed for p in attempted)

    @property
    def published(self) -> int:
        return sum(p.published for p in self.phases)


class OutboxProcessor:
    """
    Publishes outbox records and records each outcome.

    Features:
    - Claims batches from the store (at most one instance holds a record)
    - Publishes sequentially in creation order and waits for each ack
    - Schedules retries with exponential backoff, dead-letters on
      permanent errors or exhausted attempts
    - Keeps per-aggregate order by deferring later records of an
      aggregate whose earlier record failed
    - Graceful shutdown: finishes the in-flight publish, hands back
      unstarted claims, drains pending records within a deadline

    Usage:
        processor = OutboxProcessor(store, publisher, OutboxSettings.from_env())
        await processor.start()
        ...
        await processor.stop()
    """

    def __init__(
        self,
        store: OutboxStore,
        publisher: EventPublisher,
        settings: Optional[OutboxSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        instance_id: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.publisher = publisher
        self.settings = settings or OutboxSettings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.instance_id = instance_id or getattr(store, "instance_id", None) or f"relay-{uuid4().hex[:8]}"
        self._clock = clock or _utcnow
        self._monotonic = monotonic or time.monotonic
        self._last_cleanup = self._clock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def start(self):
        """Start the processor loop."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"outbox-processor-{self.instance_id}")
        logger.info(
            f"OutboxProcessor started: instance={self.instance_id}, "
            f"interval={self.settings.processing_interval_seconds}s, batch={self.settings.batch_size}"
        )

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop the processor.

        Waits for the shutdown drain and publisher flush. The loop task is
        cancelled only if that takes longer than `timeout`.
        """
        if self._task is None:
            return

        self._stop_event.set()
        if timeout is None:
            timeout = self.settings.shutdown_timeout_seconds * 2

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"OutboxProcessor did not stop within {timeout}s, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
        logger.info("OutboxProcessor stopped")

    async def _run(self):
        """Main processing loop."""
        while not self._stop_event.is_set():
            try:
                tick = await self.run_once()
            except Exception as e:
                logger.error(f"OutboxProcessor tick failed: {e}", exc_info=True)
                delay = self.settings.error_backoff_seconds
            else:
                if tick.store_unavailable:
                    delay = self.settings.error_backoff_seconds
                    logger.warning(f"Outbox store unavailable, backing off {delay}s")
                else:
                    delay = self.settings.processing_interval_seconds

            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        await self._shutdown()

    async def _shutdown(self):
        deadline = self._monotonic() + self.settings.shutdown_timeout_seconds
        drain = await self._run_phase(PHASE_PENDING, self.store.fetch_pending, deadline=deadline)
        logger.info(
            f"Outbox shutdown drain: published={drain.published}, failed={drain.failed}, "
            f"released={drain.released}"
        )
        try:
            await self.publisher.close()
        except Exception as e:
            logger.error(f"Failed to close event publisher: {e}", exc_info=True)

    async def run_once(self) -> TickResult:
        """Run a single tick: pending, retry and cleanup phases."""
        started = self._monotonic()

        pending = await self._run_phase(PHASE_PENDING, self.store.fetch_pending)

        if self._stop_event.is_set():
            retry = PhaseResult(PHASE_RETRY, skipped=True)
            cleanup = PhaseResult(PHASE_CLEANUP, skipped=True)
        else:
            retry = await self._run_phase(PHASE_RETRY, self.store.fetch_retryable)
            cleanup = await self._run_cleanup()

        duration = self._monotonic() - started
        record_histogram(OUTBOX_TICK_DURATION, duration)
        return TickResult(pending, retry, cleanup, duration)

    def _should_stop(self, deadline: Optional[float]) -> bool:
        if deadline is not None:
            return self._monotonic() >= deadline
        return self._stop_event.is_set()

    async def _run_phase(
        self,
        phase: str,
        fetch: Fetch,
        deadline: Optional[float] = None,
    ) -> PhaseResult:
        result = PhaseResult(phase)

        try:
            batch = await fetch(self.settings.batch_size, self._clock(), claimant=self.instance_id)
        except StoreError as e:
            result.error = e
            logger.error(f"Outbox {phase} phase: fetch failed: {e}")
            return result
        except Exception as e:
            result.error = e
            logger.error(f"Outbox {phase} phase: fetch failed unexpectedly: {e}", exc_info=True)
            return result

        result.claimed = len(batch)
        if not batch:
            return result
        logger.debug(f"Outbox {phase} phase: claimed {len(batch)} event(s)")

        failed_keys: Set[str] = set()
        index = 0
        try:
            for index, event in enumerate(batch):
                if self._should_stop(deadline):
                    result.released += await self._release(
                        batch[index:], "processor shutting down"
                    )
                    break

                if self.settings.preserve_aggregate_order and event.aggregate_key in failed_keys:
                    await self.store.release(
                        event.id,
                        self._clock(),
                        f"deferred behind failed event for aggregate {event.aggregate_key}",
                        claimant=self.instance_id,
                    )
                    result.deferred += 1
                    continue

                try:
                    status = await self._process_event(event)
                except InvalidTransitionError as e:
                    # lease expired and another instance took the record over
                    logger.warning(f"Outbox event {event.id} outcome not recorded: {e}")
                    continue

                if status == OutboxStatus.PUBLISHED:
                    result.published += 1
                elif status == OutboxStatus.FAILED:
                    result.failed += 1
                    failed_keys.add(event.aggregate_key)
                elif status == OutboxStatus.DEAD_LETTERED:
                    result.dead_lettered += 1
        except StoreError as e:
            # unrecorded claims stay PROCESSING until their lease expires
            result.error = e
            logger.error(f"Outbox {phase} phase aborted: {e}")
        except Exception as e:
            result.error = e
            logger.error(
                f"Outbox {phase} phase aborted at event {batch[index].id}: {e}", exc_info=True
            )
            result.released += await self._release_quietly(
                batch[index + 1:], f"{phase} phase aborted"
            )

        if result.published or result.failed or result.dead_lettered:
            logger.info(
                f"Outbox {phase} phase: published={result.published}, failed={result.failed}, "
                f"dead_lettered={result.dead_lettered}, deferred={result.deferred}"
            )
        return result

    async def _release(self, events: List[OutboxEvent], reason: str) -> int:
        now = self._clock()
        released = 0
        for event in events:
            if await self.store.release(event.id, now, reason, claimant=self.instance_id):
                released += 1
        return released

    async def _release_quietly(self, events: List[OutboxEvent], reason: str) -> int:
        try:
            return await self._release(events, reason)
        except Exception as e:
            logger.error(f"Could not release {len(events)} outbox claim(s): {e}")
            return 0

    async def _process_event(self, event: OutboxEvent) -> OutboxStatus:
        """Publish one claimed record and record the outcome."""
        try:
            ctx = CorrelationContext.for_event(event, self.settings.service_name)
        except ValueError as e:
            error = PermanentPublishError(f"invalid correlation context: {e}", code="INVALID_CONTEXT")
            return await self._dead_letter(event, error, logger)

        log = ctx.bind(logger, attempts=event.attempts, aggregate_key=event.aggregate_key)
        attributes = {"event_type": event.event_type}

        try:
            await self.publisher.publish(event, ctx)
        except PermanentPublishError as e:
            return await self._dead_letter(event, e, log)
        except Exception as e:
            now = self._clock()
            next_retry_at = self.retry_policy.next_retry_at(event.attempts, now)
            status = await self.store.mark_failed(
                event.id, str(e), next_retry_at, now, claimant=self.instance_id
            )
            if status == OutboxStatus.DEAD_LETTERED:
                record_counter(OUTBOX_DEAD_LETTERED, 1, attributes)
                log.error(
                    f"Outbox event {event.id} moved to dead letter after "
                    f"{event.attempts + 1} attempts: {e}"
                )
            else:
                record_counter(OUTBOX_FAILED, 1, attributes)
                log.warning(
                    f"Outbox event {event.id} failed (attempt {event.attempts + 1}/"
                    f"{self.retry_policy.max_attempts}), retry at {next_retry_at.isoformat()}: {e}"
                )
            return status

        await self.store.mark_published(event.id, self._clock(), claimant=self.instance_id)
        record_counter(OUTBOX_PUBLISHED, 1, attributes)
        log.info(f"Published outbox event {event.id} ({event.event_type})")
        return OutboxStatus.PUBLISHED

    async def _dead_letter(
        self,
        event: OutboxEvent,
        error: PermanentPublishError,
        log: Union[logging.Logger, logging.LoggerAdapter],
    ) -> OutboxStatus:
        await self.store.mark_dead_lettered(
            event.id, str(error), self._clock(), claimant=self.instance_id
        )
        record_counter(OUTBOX_DEAD_LETTERED, 1, {"event_type": event.event_type})
        log.error(f"Outbox event {event.id} ({event.event_type}) dead-lettered: {error}")
        return OutboxStatus.DEAD_LETTERED

    async def _run_cleanup(self) -> PhaseResult:
        result = PhaseResult(PHASE_CLEANUP)
        now = self._clock()

        if now - self._last_cleanup < self.settings.cleanup_interval:
            result.skipped = True
            return result

        try:
            deleted = await self.store.delete_older_than(
                self.settings.retention,
                OutboxStatus.PUBLISHED,
                now,
            )
        except StoreError as e:
            result.error = e
            logger.error(f"Outbox cleanup failed: {e}")
            return result
        except Exception as e:
            result.error = e
            logger.error(f"Outbox cleanup failed unexpectedly: {e}", exc_info=True)
            return result

        self._last_cleanup = now
        result.deleted = deleted
        if deleted:
            record_counter(OUTBOX_CLEANUP_DELETED, deleted)
            logger.info(
                f"Outbox cleanup removed {deleted} published event(s) older than "
                f"{self.settings.retention_days} days"
            )
        return result


# Global processor instance
_processor: Optional[OutboxProcessor] = None


async def start_outbox_processor(
    store: OutboxStore,
    publisher: EventPublisher,
    settings: Optional[OutboxSettings] = None,
) -> OutboxProcessor:
    """Start the global outbox processor."""
    global _processor

    if _processor is None:
        _processor = OutboxProcessor(store, publisher, settings)

    await _processor.start()
    return _processor


async def stop_outbox_processor():
    """Stop the global outbox processor."""
    global _processor
    if _processor:
        await _processor.stop()
        _processor = None


async def get_outbox_processor() -> Optional[OutboxProcessor]:
    """Get the global outbox processor instance."""
    return _processor
