"""
RoleAuthorizer: which actor may do what, in which status.

The whole rule set lives in PERMISSIONS, keyed by (role, status). The state
machine consults it before applying any guard of its own.
"""
from enum import Enum
from typing import Dict, FrozenSet, Tuple

from .errors import InvalidTransition
from .interfaces import Actor
from .states import OrderStatus, Role, status_of


class Action(str, Enum):
    SUBMIT_FULL_PAYMENT = "submit_full_payment"
    SUBMIT_DEPOSIT = "submit_deposit"
    SUBMIT_REMAINING_PAYMENT = "submit_remaining_payment"
    VERIFY_PAYMENT = "verify_payment"
    ADMIN_APPROVE = "admin_approve"
    PROPOSE_PRICE = "propose_price"
    APPROVE_PRICE = "approve_price"
    REJECT_PRICE = "reject_price"
    SELLER_APPROVE = "seller_approve"
    START_WORK = "start_work"
    COMPLETE_WORK = "complete_work"
    ASSIGN_COURIER = "assign_courier"
    PICKUP = "pickup"
    DELIVER = "deliver"
    SUSPEND = "suspend"
    CONFIRM_RECEIPT = "confirm_receipt"
    CANCEL = "cancel"
    REVIEW = "review"


S = OrderStatus
A = Action

_REMAINING_WINDOW = (
    S.ADMIN_APPROVED, S.SELLER_APPROVED, S.IN_PROGRESS,
    S.READY_FOR_DELIVERY, S.OUT_FOR_DELIVERY, S.DELIVERED,
)


def _build_permissions() -> Dict[Tuple[Role, OrderStatus], FrozenSet[Action]]:
    table: Dict[Tuple[Role, OrderStatus], set] = {}

    def allow(role: Role, statuses, *actions: Action) -> None:
        for status in statuses:
            table.setdefault((role, status), set()).update(actions)

    # Customer
    allow(Role.CUSTOMER, [S.PENDING],
          A.SUBMIT_FULL_PAYMENT, A.SUBMIT_DEPOSIT, A.PROPOSE_PRICE, A.CANCEL)
    allow(Role.CUSTOMER, [S.ADMIN_APPROVED], A.PROPOSE_PRICE, A.CANCEL)
    allow(Role.CUSTOMER, _REMAINING_WINDOW, A.SUBMIT_REMAINING_PAYMENT)
    allow(Role.CUSTOMER, [S.DELIVERED], A.CONFIRM_RECEIPT)
    allow(Role.CUSTOMER, [S.COMPLETED], A.REVIEW)

    # Seller
    allow(Role.SELLER, [S.PENDING, S.ADMIN_APPROVED], A.APPROVE_PRICE, A.REJECT_PRICE)
    allow(Role.SELLER, [S.ADMIN_APPROVED], A.SELLER_APPROVE, A.CANCEL)
    allow(Role.SELLER, [S.SELLER_APPROVED], A.START_WORK, A.CANCEL)
    allow(Role.SELLER, [S.IN_PROGRESS], A.COMPLETE_WORK)

    # Administrator
    allow(Role.ADMINISTRATOR, [S.PENDING], A.ADMIN_APPROVE)
    allow(Role.ADMINISTRATOR, [S.PENDING, *_REMAINING_WINDOW], A.VERIFY_PAYMENT)
    allow(Role.ADMINISTRATOR, [S.PENDING, S.ADMIN_APPROVED, S.SELLER_APPROVED], A.CANCEL)
    allow(Role.ADMINISTRATOR,
          [S.ADMIN_APPROVED, S.SELLER_APPROVED, S.IN_PROGRESS,
           S.READY_FOR_DELIVERY, S.OUT_FOR_DELIVERY, S.SUSPENDED],
          A.ASSIGN_COURIER)

    # Courier
    allow(Role.COURIER, [S.READY_FOR_DELIVERY], A.PICKUP)
    allow(Role.COURIER, [S.OUT_FOR_DELIVERY], A.DELIVER, A.SUSPEND)

    return {key: frozenset(actions) for key, actions in table.items()}


PERMISSIONS: Dict[Tuple[Role, OrderStatus], FrozenSet[Action]] = _build_permissions()

# Actions a role may perform in at least one status
ROLE_ACTIONS: Dict[Role, FrozenSet[Action]] = {
    role: frozenset(
        action
        for (table_role, _), actions in PERMISSIONS.items() if table_role == role
        for action in actions
    )
    for role in Role
}


class RoleAuthorizer:
    """Answers whether an actor may perform an action on an order right now."""

    def __init__(self, permissions: Dict[Tuple[Role, OrderStatus], FrozenSet[Action]] = PERMISSIONS):
        self._permissions = permissions

    def allowed(self, role: Role, status: OrderStatus) -> FrozenSet[Action]:
        return self._permissions.get((Role(role), OrderStatus(status)), frozenset())

    def owns(self, actor: Actor, order) -> bool:
        if actor.role == Role.ADMINISTRATOR:
            return True
        if actor.role == Role.CUSTOMER:
            return actor.user_id is not None and actor.user_id == order.customer_id
        if actor.role == Role.SELLER:
            return actor.user_id is not None and actor.user_id == order.seller_id
        if actor.role == Role.COURIER:
            return actor.user_id is not None and actor.user_id == order.courier_id
        return False

    def permitted_actions(self, actor: Actor, order) -> FrozenSet[Action]:
        if not self.owns(actor, order):
            return frozenset()
        return self.allowed(actor.role, status_of(order))

    def authorize(self, actor: Actor, order, action: Action) -> None:
        """Raise InvalidTransition naming the first failed check."""
        role = Role(actor.role)
        status = status_of(order)
        if action not in ROLE_ACTIONS.get(role, frozenset()):
            raise InvalidTransition(
                f"Role {role.value} may not {action.value}",
                guard="role_not_permitted", role=role.value, action=action.value,
            )
        if action not in self.allowed(role, status):
            raise InvalidTransition(
                f"Cannot {action.value} while order is {status.value}",
                guard="wrong_status", status=status.value, action=action.value,
            )
        if not self.owns(actor, order):
            guard = "courier_not_assigned" if role == Role.COURIER else "not_order_owner"
            raise InvalidTransition(
                f"Order {order.id} is not assigned to this {role.value}",
                guard=guard, role=role.value,
            )
