"""
DeadlineTracker: completion deadline, lateness flag and remaining time.

Lateness is evaluated lazily whenever an order in production is read. The
flag is sticky: nothing in the lifecycle ever clears it.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .clock import as_utc
from .errors import ValidationError
from .states import NotificationType, PRODUCTION_STATES, status_of
from .timeline import append_event, emit


@dataclass(frozen=True)
class TimeRemaining:
    days: int
    hours: int
    overdue: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"days": self.days, "hours": self.hours, "overdue": self.overdue}


class DeadlineTracker:

    def set_deadline(self, order, deadline: datetime, now: datetime) -> None:
        """Record the seller's completion deadline; must be strictly in the future."""
        if deadline is None:
            raise ValidationError("A completion deadline is required", guard="missing_deadline")
        if deadline.tzinfo is None:
            raise ValidationError(
                "The completion deadline must carry a timezone", guard="naive_deadline",
            )
        deadline = as_utc(deadline)
        if deadline <= as_utc(now):
            raise ValidationError(
                "The completion deadline must be in the future",
                guard="deadline_not_in_future", deadline=deadline.isoformat(),
            )
        order.completion_deadline = deadline

    def is_overdue(self, order, now: datetime) -> bool:
        """True when an order in production has passed its deadline.

        An unreadable deadline is logged and reported as not late.
        """
        try:
            if status_of(order) not in PRODUCTION_STATES or order.completion_deadline is None:
                return False
            return as_utc(now) > as_utc(order.completion_deadline)
        except (TypeError, ValueError, AttributeError) as e:
            logging.warning(f"Could not evaluate deadline for order {getattr(order, 'id', '?')}: {e}")
            return False

    def evaluate_lateness(self, order, now: datetime) -> bool:
        """Flip `is_late` once. Returns True only on the evaluation that flipped it."""
        if order.is_late or not self.is_overdue(order, now):
            return False
        order.is_late = True
        self.record_lateness(order, now)
        return True

    def record_lateness(self, order, now: datetime) -> None:
        """Timeline and outbox records for a flag that has just been set."""
        append_event(order, "deadline_exceeded", now, notes="Completion deadline passed")
        emit(order, NotificationType.DEADLINE_EXCEEDED, now,
             deadline=as_utc(order.completion_deadline))
        logging.info(f"Order {order.id} marked as late")

    def time_remaining(self, order, now: datetime) -> Optional[TimeRemaining]:
        """Derived `deadline - now` split into whole days and remainder hours."""
        if order.completion_deadline is None or status_of(order) not in PRODUCTION_STATES:
            return None
        try:
            delta = as_utc(order.completion_deadline) - as_utc(now)
        except (TypeError, ValueError) as e:
            logging.warning(f"Could not compute remaining time for order {order.id}: {e}")
            return None
        seconds = int(delta.total_seconds())
        if seconds <= 0:
            return TimeRemaining(days=0, hours=0, overdue=True)
        days, rest = divmod(seconds, 86400)
        return TimeRemaining(days=days, hours=rest // 3600, overdue=False)
