"""Audit timeline and notification outbox records attached to an order."""
from datetime import datetime
from typing import Any, Optional

from database.models import NotificationEvent, TimelineEvent
from .interfaces import Actor
from .states import NotificationType


def append_event(order, label: str, now: datetime, actor: Optional[Actor] = None,
                 notes: Optional[str] = None) -> TimelineEvent:
    """Append one write-once timeline record reflecting the order's current status."""
    event = TimelineEvent(
        label=label,
        status=order.status,
        actor_role=actor.role.value if actor else None,
        actor_id=actor.user_id if actor else None,
        notes=notes,
        timestamp=now,
    )
    order.timeline.append(event)
    return event


def emit(order, notification_type: NotificationType, now: datetime, **payload: Any) -> NotificationEvent:
    """Queue one event for the external notifier; committed with the transition."""
    body = {"order_id": order.id, "status": order.status}
    body.update({key: _jsonable(value) for key, value in payload.items()})
    notification = NotificationEvent(type=notification_type.value, payload_json=body, ts=now)
    order.notifications.append(notification)
    return notification


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
