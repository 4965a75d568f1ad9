"""
Event Taxonomy

Domain event types emitted through the outbox and the topic category each
belongs to.

Event naming convention: {Aggregate}{PastTenseVerb}
- ContactCreated, ContactInfoAdded, ReportCompleted, ...
"""

from enum import Enum
from typing import Dict, Optional


class EventCategory(str, Enum):
    """Topic categories."""
    CONTACT = "contact"
    REPORT = "report"
    NOTIFICATION = "notification"


class ContactEventType(str, Enum):
    """Contact aggregate lifecycle events."""
    CREATED = "ContactCreated"
    UPDATED = "ContactUpdated"
    DELETED = "ContactDeleted"
    INFO_ADDED = "ContactInfoAdded"
    INFO_REMOVED = "ContactInfoRemoved"


class ReportEventType(str, Enum):
    """Report generation events."""
    REQUESTED = "ReportRequested"
    COMPLETED = "ReportCompleted"


class NotificationEventType(str, Enum):
    """Notification events."""
    SENT = "NotificationSent"


# Combined lookup: event type -> category
ALL_EVENT_TYPES: Dict[str, EventCategory] = {
    **{e.value: EventCategory.CONTACT for e in ContactEventType},
    **{e.value: EventCategory.REPORT for e in ReportEventType},
    **{e.value: EventCategory.NOTIFICATION for e in NotificationEventType},
}


def validate_event_type(event_type: str) -> bool:
    """Check if event type is known."""
    return event_type in ALL_EVENT_TYPES


def get_category(event_type: str) -> Optional[EventCategory]:
    """Category of a known event type, None otherwise."""
    return ALL_EVENT_TYPES.get(event_type)
