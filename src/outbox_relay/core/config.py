"""
Outbox Relay Configuration

Settings for the outbox processor and the Kafka producer/consumer, loaded
from environment variables (and a local .env file when present).
"""

import os
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


class OutboxSettings(BaseModel):
    """Processor loop, retry and retention configuration."""

    service_name: str = "contact-service"
    processing_interval_seconds: float = Field(30.0, gt=0)
    error_backoff_seconds: float = Field(60.0, gt=0)
    cleanup_interval_hours: float = Field(1.0, gt=0)
    retention_days: int = Field(7, ge=1)
    batch_size: int = Field(50, ge=1)
    max_attempts: int = Field(5, ge=1)
    backoff_base_ms: int = Field(60_000, ge=1)
    backoff_cap_ms: int = Field(1_800_000, ge=1)
    backoff_jitter_ratio: float = Field(0.1, ge=0.0, le=1.0)
    lease_timeout_seconds: float = Field(300.0, gt=0)
    shutdown_timeout_seconds: float = Field(30.0, gt=0)
    preserve_aggregate_order: bool = True

    @field_validator("backoff_cap_ms")
    @classmethod
    def _cap_not_below_base(cls, value: int, info) -> int:
        base = info.data.get("backoff_base_ms")
        if base is not None and value < base:
            raise ValueError("backoff_cap_ms must be >= backoff_base_ms")
        return value

    @property
    def lease_timeout(self) -> timedelta:
        return timedelta(seconds=self.lease_timeout_seconds)

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    @property
    def cleanup_interval(self) -> timedelta:
        return timedelta(hours=self.cleanup_interval_hours)

    @classmethod
    def from_env(cls) -> "OutboxSettings":
        return cls(
            service_name=os.getenv("SERVICE_NAME", "contact-service"),
            processing_interval_seconds=_env_float("OUTBOX_PROCESSING_INTERVAL_SECONDS", 30.0),
            error_backoff_seconds=_env_float("OUTBOX_ERROR_BACKOFF_SECONDS", 60.0),
            cleanup_interval_hours=_env_float("OUTBOX_CLEANUP_INTERVAL_HOURS", 1.0),
            retention_days=_env_int("OUTBOX_RETENTION_DAYS", 7),
            batch_size=_env_int("OUTBOX_BATCH_SIZE", 50),
            max_attempts=_env_int("OUTBOX_MAX_ATTEMPTS", 5),
            backoff_base_ms=_env_int("OUTBOX_BACKOFF_BASE_MS", 60_000),
            backoff_cap_ms=_env_int("OUTBOX_BACKOFF_CAP_MS", 1_800_000),
            backoff_jitter_ratio=_env_float("OUTBOX_BACKOFF_JITTER_RATIO", 0.1),
            lease_timeout_seconds=_env_float("OUTBOX_LEASE_TIMEOUT_SECONDS", 300.0),
            shutdown_timeout_seconds=_env_float("OUTBOX_SHUTDOWN_TIMEOUT_SECONDS", 30.0),
            preserve_aggregate_order=_env_bool("OUTBOX_PRESERVE_AGGREGATE_ORDER", True),
        )


class TopicSettings(BaseModel):
    """Topic names per event category."""

    contact_events: str = "contact-events"
    report_events: str = "report-events"
    notification_events: str = "notification-events"
    default: str = "contact-events"
    overrides: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "TopicSettings":
        contact = os.getenv("KAFKA_TOPIC_CONTACT_EVENTS", "contact-events")
        return cls(
            contact_events=contact,
            report_events=os.getenv("KAFKA_TOPIC_REPORT_EVENTS", "report-events"),
            notification_events=os.getenv("KAFKA_TOPIC_NOTIFICATION_EVENTS", "notification-events"),
            default=os.getenv("KAFKA_TOPIC_DEFAULT", contact),
        )


class KafkaSettings(BaseModel):
    """Broker connection and producer durability settings."""

    bootstrap_servers: str = "localhost:9092"
    client_id: str = "outbox-relay"
    group_id: str = "outbox-relay-consumers"
    acks: str = "all"
    enable_idempotence: bool = True
    message_timeout_ms: int = Field(30_000, ge=1)
    request_timeout_ms: int = Field(30_000, ge=1)
    retries: int = Field(3, ge=0)
    retry_backoff_ms: int = Field(100, ge=0)
    linger_ms: int = Field(10, ge=0)
    batch_size: int = Field(16_384, ge=1)
    compression_type: str = "snappy"
    max_in_flight: int = Field(1, ge=1, le=5)
    topics: TopicSettings = Field(default_factory=TopicSettings)

    @field_validator("acks")
    @classmethod
    def _valid_acks(cls, value: str) -> str:
        value = value.lower()
        if value not in ("all", "-1", "0", "1"):
            raise ValueError(f"unsupported acks mode: {value}")
        return value

    @field_validator("compression_type")
    @classmethod
    def _valid_compression(cls, value: str) -> str:
        value = value.lower()
        if value not in ("none", "gzip", "snappy", "lz4", "zstd"):
            raise ValueError(f"unsupported compression type: {value}")
        return value

    @property
    def producer_timeout_seconds(self) -> float:
        """Upper bound on waiting for one delivery report."""
        return self.message_timeout_ms / 1000.0 + 5.0

    def producer_config(self) -> Dict[str, object]:
        """librdkafka configuration for the idempotent producer."""
        return {
            "bootstrap.servers": self.bootstrap_servers,
            "client.id": self.client_id,
            "acks": self.acks,
            "enable.idempotence": self.enable_idempotence,
            "message.timeout.ms": self.message_timeout_ms,
            "request.timeout.ms": self.request_timeout_ms,
            "retries": self.retries,
            "retry.backoff.ms": self.retry_backoff_ms,
            "linger.ms": self.linger_ms,
            "batch.size": self.batch_size,
            "compression.type": self.compression_type,
            "max.in.flight.requests.per.connection": self.max_in_flight,
        }

    def consumer_config(self, group_id: Optional[str] = None) -> Dict[str, object]:
        """librdkafka configuration for a manually-committing consumer."""
        return {
            "bootstrap.servers": self.bootstrap_servers,
            "client.id": self.client_id,
            "group.id": group_id or self.group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
            "enable.auto.offset.store": False,
        }

    @classmethod
    def from_env(cls) -> "KafkaSettings":
        return cls(
            bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"),
            client_id=os.getenv("KAFKA_CLIENT_ID", "outbox-relay"),
            group_id=os.getenv("KAFKA_GROUP_ID", "outbox-relay-consumers"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=_env_bool("KAFKA_ENABLE_IDEMPOTENCE", True),
            message_timeout_ms=_env_int("KAFKA_MESSAGE_TIMEOUT_MS", 30_000),
            request_timeout_ms=_env_int("KAFKA_REQUEST_TIMEOUT_MS", 30_000),
            retries=_env_int("KAFKA_RETRIES", 3),
            retry_backoff_ms=_env_int("KAFKA_RETRY_BACKOFF_MS", 100),
            linger_ms=_env_int("KAFKA_LINGER_MS", 10),
            batch_size=_env_int("KAFKA_BATCH_SIZE", 16_384),
            compression_type=os.getenv("KAFKA_COMPRESSION_TYPE", "snappy"),
            max_in_flight=_env_int("KAFKA_MAX_IN_FLIGHT", 1),
            topics=TopicSettings.from_env(),
        )
