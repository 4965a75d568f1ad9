"""
Correlation Context

An immutable value carrying the correlation id of one logical operation.
It is created at the operation's entry point (HTTP request, consumed
message, outbox publish) and passed explicitly to every call that needs it.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Tuple, Union
from uuid import uuid4

if TYPE_CHECKING:
    from ..outbox.models import OutboxEvent

CORRELATION_ID_HEADER = "X-Correlation-ID"
# Key written by older producers
LEGACY_CORRELATION_ID_HEADER = "CorrelationId"
SOURCE_SERVICE_HEADER = "source-service"

MAX_CORRELATION_ID_LENGTH = 100

ORIGIN_GENERATED = "generated"
ORIGIN_HTTP = "http"
ORIGIN_MESSAGE = "message"
ORIGIN_EVENT = "event"

MessageHeaders = Optional[Union[Iterable[Tuple[str, Any]], Mapping[str, Any]]]


def generate_correlation_id() -> str:
    """16 lowercase hex characters."""
    return uuid4().hex[:16]


def validate_correlation_id(value: Optional[str]) -> str:
    """
    Validate an inbound correlation id.

    Returns the stripped id.

    Raises:
        ValueError: if the id is missing, blank, too long or not printable
    """
    if value is None:
        raise ValueError("correlation id is missing")
    value = value.strip()
    if not value:
        raise ValueError("correlation id is blank")
    if len(value) > MAX_CORRELATION_ID_LENGTH:
        raise ValueError(
            f"correlation id exceeds {MAX_CORRELATION_ID_LENGTH} characters"
        )
    if not value.isprintable():
        raise ValueError("correlation id contains non-printable characters")
    return value


def _is_valid(value: Optional[str]) -> bool:
    try:
        validate_correlation_id(value)
    except ValueError:
        return False
    return True


def _decode(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return None
    return str(value)


def _header_items(headers: MessageHeaders) -> List[Tuple[str, Any]]:
    if not headers:
        return []
    if isinstance(headers, Mapping):
        return list(headers.items())
    return list(headers)


class _CorrelationAdapter(logging.LoggerAdapter):
    """Stamps correlation_id and bound fields on every record."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


@dataclass(frozen=True)
class CorrelationContext:
    """
    Correlation id plus the service that owns the current operation.

    Usage:
        ctx = CorrelationContext.from_http_headers(request.headers, "contact-service")
        log = ctx.bind(logger)
        log.info("Creating contact")
        await writer.write(ctx, "ContactCreated", data, aggregate_key=contact_id)
    """

    correlation_id: str
    source_service: str
    origin: str = ORIGIN_GENERATED
    fields: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "correlation_id", validate_correlation_id(self.correlation_id))

    @classmethod
    def new(cls, source_service: str) -> "CorrelationContext":
        return cls(generate_correlation_id(), source_service, ORIGIN_GENERATED)

    @classmethod
    def from_http_headers(
        cls,
        headers: Optional[Mapping[str, str]],
        source_service: str,
    ) -> "CorrelationContext":
        """Adopt the inbound X-Correlation-ID if valid, otherwise generate one."""
        value = None
        if headers:
            value = headers.get(CORRELATION_ID_HEADER)
            if value is None:
                # plain dicts are case-sensitive
                lowered = CORRELATION_ID_HEADER.lower()
                for key, candidate in headers.items():
                    if key.lower() == lowered:
                        value = candidate
                        break
        if _is_valid(value):
            return cls(value, source_service, ORIGIN_HTTP)
        return cls.new(source_service)

    @classmethod
    def from_message_headers(
        cls,
        headers: MessageHeaders,
        source_service: str,
        fallback: Optional[str] = None,
    ) -> "CorrelationContext":
        """
        Re-establish the context from a consumed Kafka message.

        Header lookup is case-insensitive and also accepts the legacy
        ``CorrelationId`` key. `fallback` (usually the envelope's
        correlationId) is used when no header carries a valid id.
        """
        wanted = {CORRELATION_ID_HEADER.lower(), LEGACY_CORRELATION_ID_HEADER.lower()}
        for key, raw in _header_items(headers):
            if key.lower() not in wanted:
                continue
            value = _decode(raw)
            if _is_valid(value):
                return cls(value, source_service, ORIGIN_MESSAGE)

        if _is_valid(fallback):
            return cls(fallback, source_service, ORIGIN_MESSAGE)

        return cls(generate_correlation_id(), source_service, ORIGIN_MESSAGE)

    @classmethod
    def for_event(cls, event: "OutboxEvent", source_service: str) -> "CorrelationContext":
        """Context for publishing one outbox record; the id is copied verbatim."""
        return cls(
            event.correlation_id,
            source_service,
            ORIGIN_EVENT,
            {"event_id": str(event.id), "event_type": event.event_type},
        )

    def with_fields(self, **fields: Any) -> "CorrelationContext":
        merged = dict(self.fields)
        merged.update(fields)
        return CorrelationContext(self.correlation_id, self.source_service, self.origin, merged)

    def to_http_headers(self) -> Dict[str, str]:
        return {CORRELATION_ID_HEADER: self.correlation_id}

    def to_message_headers(self) -> List[Tuple[str, bytes]]:
        return [
            (CORRELATION_ID_HEADER, self.correlation_id.encode("utf-8")),
            (SOURCE_SERVICE_HEADER, self.source_service.encode("utf-8")),
        ]

    def log_extra(self, **fields: Any) -> Dict[str, Any]:
        """`extra=` mapping for a single log call."""
        extra = {"correlation_id": self.correlation_id, "source_service": self.source_service}
        extra.update(self.fields)
        extra.update(fields)
        return extra

    def bind(self, logger: logging.Logger, **fields: Any) -> logging.LoggerAdapter:
        return _CorrelationAdapter(logger, self.log_extra(**fields))
