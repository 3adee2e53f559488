"""
DeliveryHandoff: courier pickup, delivery and suspension.

Active only while an order is ready_for_delivery or out_for_delivery. A
courier acts only on orders assigned to them; assigning or reassigning is
an administrator action on the base state machine.
"""
from datetime import datetime
from typing import Optional

from .authorizer import Action
from .errors import ValidationError
from .interfaces import Actor
from .state_machine import OrderStateMachine, _text
from .states import NotificationType, OrderStatus, status_of

MAX_SUSPENSION_REASON_LENGTH = 500


class DeliveryHandoff(OrderStateMachine):

    def pickup(self, order, actor: Actor, notes: Optional[str] = None,
               now: Optional[datetime] = None):
        """Courier confirms physical receipt from the seller.

        An order carrying a pickup time from an earlier partial handoff keeps
        that time; the call only records the status change.
        """
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.PICKUP)
        picked_up_at = order.delivery_picked_up_at or now
        return self._transition(order, OrderStatus.OUT_FOR_DELIVERY, "picked_up", actor, now,
                                notes=_text(notes), changes={"delivery_picked_up_at": picked_up_at})

    def deliver(self, order, actor: Actor, notes: Optional[str] = None,
                now: Optional[datetime] = None):
        """Courier confirms handoff to the customer."""
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.DELIVER)
        return self._transition(order, OrderStatus.DELIVERED, "delivered", actor, now,
                                notes=_text(notes), changes={"delivered_at": now})

    def suspend(self, order, actor: Actor, reason: str, now: Optional[datetime] = None):
        """Customer unreachable: hand the order back to administration.

        Not a cancellation. The courier stays assigned and nothing is refunded.
        """
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.SUSPEND)
        reason = _text(reason)
        if not reason:
            raise ValidationError("A suspension reason is required", guard="missing_suspension_reason")
        if len(reason) > MAX_SUSPENSION_REASON_LENGTH:
            raise ValidationError(
                f"Suspension reason is limited to {MAX_SUSPENSION_REASON_LENGTH} characters",
                guard="suspension_reason_too_long", length=len(reason),
            )
        return self._transition(order, OrderStatus.SUSPENDED, "suspended", actor, now, notes=reason,
                                changes={"suspended_at": now, "suspension_reason": reason},
                                notification=NotificationType.ORDER_SUSPENDED, reason=reason)

    @staticmethod
    def courier_status(order) -> OrderStatus:
        """Status as couriers see it.

        An order already picked up but still recorded as ready_for_delivery
        is shown as out_for_delivery.
        """
        status = status_of(order)
        if status == OrderStatus.READY_FOR_DELIVERY and order.delivery_picked_up_at is not None:
            return OrderStatus.OUT_FOR_DELIVERY
        return status
