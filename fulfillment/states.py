"""
Order lifecycle states and the transition graph.

`status` is the primary state. Price approval, deposit and payment review
are secondary fields scoped to their own concerns; guards in the state
machine reference the combination explicitly.
"""
from enum import Enum
from typing import Dict, FrozenSet


class OrderStatus(str, Enum):
    PENDING = "pending"
    ADMIN_APPROVED = "admin_approved"
    SELLER_APPROVED = "seller_approved"
    IN_PROGRESS = "in_progress"
    READY_FOR_DELIVERY = "ready_for_delivery"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class PriceApprovalStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class DepositStatus(str, Enum):
    NOT_PAID = "not_paid"
    PAID = "paid"


class PaymentReviewStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"


class PaymentKind(str, Enum):
    FULL = "full"
    DEPOSIT = "deposit"
    REMAINING = "remaining"


class Role(str, Enum):
    CUSTOMER = "customer"
    SELLER = "seller"
    ADMINISTRATOR = "administrator"
    COURIER = "courier"


class NotificationType(str, Enum):
    STATUS_CHANGED = "status_changed"
    PAYMENT_VERIFIED = "payment_verified"
    ORDER_SUSPENDED = "order_suspended"
    DEADLINE_EXCEEDED = "deadline_exceeded"


ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ADMIN_APPROVED, OrderStatus.CANCELLED}),
    OrderStatus.ADMIN_APPROVED: frozenset({OrderStatus.SELLER_APPROVED, OrderStatus.CANCELLED}),
    OrderStatus.SELLER_APPROVED: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED}),
    OrderStatus.IN_PROGRESS: frozenset({OrderStatus.READY_FOR_DELIVERY}),
    OrderStatus.READY_FOR_DELIVERY: frozenset({OrderStatus.OUT_FOR_DELIVERY}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.SUSPENDED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.SUSPENDED: frozenset(),
}

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Orders that have not entered production and may still be cancelled
PRE_PRODUCTION_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.ADMIN_APPROVED,
    OrderStatus.SELLER_APPROVED,
})

# Orders a deadline applies to
PRODUCTION_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.SELLER_APPROVED,
    OrderStatus.IN_PROGRESS,
})

# Window in which the remaining balance may be paid
REMAINING_PAYMENT_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.ADMIN_APPROVED,
    OrderStatus.SELLER_APPROVED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.READY_FOR_DELIVERY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
})


def status_of(order) -> OrderStatus:
    """Coerce the persisted status string to an OrderStatus."""
    return OrderStatus(order.status)


def is_valid_transition(source: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(OrderStatus(source), frozenset())
