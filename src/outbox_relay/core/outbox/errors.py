"""
Outbox Exceptions

Failure taxonomy used by the publisher, the stores and the processor:

- TransientPublishError: broker timeout, leader unavailable, transport errors.
  The record goes to FAILED with a scheduled retry.
- PermanentPublishError: payload too large, serialization failure.
  The record goes straight to DEAD_LETTERED.
- StoreError: the outbox store could not be read or written. The phase
  that hit it is aborted for the current tick.
- ClaimLostError: an outcome write from an instance whose lease expired
  and whose record another instance has since re-claimed.
"""

from typing import Optional
from uuid import UUID


class OutboxError(Exception):
    """Base class for outbox relay errors."""


class PublishError(OutboxError):
    """A broker publish did not receive an acknowledgement."""

    retryable: bool = True

    def __init__(self, message: str, *, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        if self.code:
            return f"{self.code}: {self.message}"
        return self.message


class TransientPublishError(PublishError):
    """Retryable delivery failure."""

    retryable = True


class PermanentPublishError(PublishError):
    """Non-retryable delivery failure; retrying cannot succeed."""

    retryable = False


class SerializationError(PermanentPublishError):
    """The outbox payload could not be turned into a broker message."""


class StoreError(OutboxError):
    """The outbox store is unreachable or rejected an operation."""


class InvalidTransitionError(OutboxError):
    """A status change that the outbox state machine does not allow."""

    def __init__(self, event_id: UUID, current: str, target: str):
        self.event_id = event_id
        self.current = current
        self.target = target
        super().__init__(
            f"Outbox event {event_id} cannot move from {current} to {target}"
        )


class ClaimLostError(InvalidTransitionError):
    """The record is now claimed by another processor instance."""

    def __init__(self, event_id: UUID, holder: Optional[str], claimant: str, target: str):
        self.event_id = event_id
        self.current = "processing"
        self.target = target
        self.holder = holder
        self.claimant = claimant
        OutboxError.__init__(
            self,
            f"Outbox event {event_id} is claimed by {holder or 'nobody'}, "
            f"not {claimant}; {target} outcome rejected",
        )
