"""
Event Models

Wire envelope for events published to Kafka and the broker receipt
returned by a successful publish.
"""

import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..outbox.errors import SerializationError
from ..outbox.models import OutboxEvent

SCHEMA_VERSION = "1.0"


class MessageEnvelope(BaseModel):
    """
    JSON envelope carried as the Kafka message value.

    Serialized with camelCase keys:
        {"eventId": ..., "eventType": ..., "correlationId": ...,
         "timestamp": ..., "sourceService": ..., "schemaVersion": ..., "data": {...}}
    """

    model_config = ConfigDict(populate_by_name=True)

    event_id: UUID = Field(..., alias="eventId")
    event_type: str = Field(..., alias="eventType")
    correlation_id: str = Field(..., alias="correlationId")
    timestamp: datetime
    source_service: str = Field(..., alias="sourceService")
    schema_version: str = Field(SCHEMA_VERSION, alias="schemaVersion")
    data: Any = None

    @classmethod
    def from_outbox_event(cls, event: OutboxEvent, source_service: str) -> "MessageEnvelope":
        """
        Build the envelope for an outbox record.

        The timestamp is the record's created_at, so it is identical on
        every retry of the same record.

        Raises:
            SerializationError: if the stored payload is not valid JSON
        """
        try:
            data = json.loads(event.payload)
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Payload of outbox event {event.id} is not valid JSON: {e}",
                code="INVALID_PAYLOAD",
            ) from e

        return cls(
            event_id=event.id,
            event_type=event.event_type,
            correlation_id=event.correlation_id,
            timestamp=event.created_at,
            source_service=source_service,
            data=data,
        )

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: Optional[bytes]) -> "MessageEnvelope":
        """
        Parse a consumed message value.

        Raises:
            SerializationError: if the value is empty or not a valid envelope
        """
        if not raw:
            raise SerializationError("Empty message value", code="EMPTY_MESSAGE")
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise SerializationError(f"Invalid message envelope: {e}", code="INVALID_ENVELOPE") from e


class PublishReceipt(BaseModel):
    """Broker acknowledgement for one produced message."""

    model_config = ConfigDict(frozen=True)

    topic: str
    partition: int
    offset: int
