"""
Outbox Health

Classifies outbox statistics into healthy / degraded / unhealthy.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import OutboxStatistics

DEAD_LETTER_UNHEALTHY_THRESHOLD = 10
PENDING_DEGRADED_THRESHOLD = 100
STALL_THRESHOLD = timedelta(minutes=10)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class OutboxHealth(BaseModel):
    status: HealthStatus
    reasons: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)


def evaluate_outbox_health(
    stats: OutboxStatistics,
    now: datetime,
    dead_letter_threshold: int = DEAD_LETTER_UNHEALTHY_THRESHOLD,
    pending_threshold: int = PENDING_DEGRADED_THRESHOLD,
    stall_threshold: timedelta = STALL_THRESHOLD,
) -> OutboxHealth:
    """
    - more than `dead_letter_threshold` dead-lettered records: unhealthy
    - more than `pending_threshold` pending records: degraded
    - pending records but nothing published for `stall_threshold`: degraded
    """
    reasons: List[str] = []
    status = HealthStatus.HEALTHY

    if stats.dead_lettered > dead_letter_threshold:
        status = HealthStatus.UNHEALTHY
        reasons.append(f"{stats.dead_lettered} dead-lettered events")

    if stats.pending > pending_threshold:
        reasons.append(f"{stats.pending} pending events")
        if status == HealthStatus.HEALTHY:
            status = HealthStatus.DEGRADED

    last_published: Optional[datetime] = stats.last_published_at
    if stats.pending > 0:
        # never published counts from the oldest pending record
        reference = last_published or stats.oldest_pending_at
        if reference is not None and now - reference > stall_threshold:
            reasons.append(f"no event published since {reference.isoformat()}")
            if status == HealthStatus.HEALTHY:
                status = HealthStatus.DEGRADED

    return OutboxHealth(status=status, reasons=reasons, data=stats.to_dict())
