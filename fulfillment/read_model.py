"""Read model returned to every caller after a read or a transition."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from .clock import as_utc
from .delivery import DeliveryHandoff
from .interfaces import Actor


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _amount(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


def order_view(order, actor: Optional[Actor], now: datetime,
               machine: Optional[DeliveryHandoff] = None) -> Dict[str, Any]:
    machine = machine or DeliveryHandoff()
    remaining = machine.deadlines.time_remaining(order, now)
    permitted = machine.authorizer.permitted_actions(actor, order) if actor else frozenset()

    return {
        "id": order.id,
        "version": order.version,
        "status": order.status,
        "courier_status": machine.courier_status(order).value,
        "customer_id": order.customer_id,
        "seller_id": order.seller_id,
        "courier_id": order.courier_id,
        "city_id": order.city_id,
        "delivery_address": order.delivery_address,
        "seller_address": order.seller_address,
        "is_service_order": order.is_service_order,
        "total_price": _amount(order.total_price),
        "delivery_fee": _amount(order.delivery_fee),
        "buyer_total": _amount(Decimal(order.total_price) + Decimal(order.delivery_fee or 0)),
        "requires_deposit": order.requires_deposit,
        "deposit_amount": _amount(order.deposit_amount),
        "deposit_status": order.deposit_status,
        "payment_status": order.payment_status,
        "remaining_amount": _amount(machine.ledger.remaining_amount(order)),
        "remaining_payment_proof": order.remaining_payment_proof,
        "price_proposal": {
            "original_price": _amount(order.original_price),
            "proposed_price": _amount(order.proposed_price),
            "status": order.price_approval_status,
            "decided_at": _iso(order.price_approved_at),
            "notes": order.price_approval_notes,
        } if order.price_approval_status else None,
        "created_at": _iso(order.created_at),
        "admin_approved_at": _iso(order.admin_approved_at),
        "seller_approved_at": _iso(order.seller_approved_at),
        "work_started_at": _iso(order.work_started_at),
        "work_completed_at": _iso(order.work_completed_at),
        "delivery_scheduled_at": _iso(order.delivery_scheduled_at),
        "completion_deadline": _iso(order.completion_deadline),
        "is_late": order.is_late,
        "time_remaining": remaining.to_dict() if remaining else None,
        "delivery_picked_up_at": _iso(order.delivery_picked_up_at),
        "delivered_at": _iso(order.delivered_at),
        "completed_at": _iso(order.completed_at),
        "suspended_at": _iso(order.suspended_at),
        "suspension_reason": order.suspension_reason,
        "cancelled_at": _iso(order.cancelled_at),
        "cancellation_reason": order.cancellation_reason,
        "permitted_actions": sorted(action.value for action in permitted),
        "items": [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": _amount(item.unit_price),
                "subtotal": _amount(Decimal(item.unit_price) * item.quantity),
            }
            for item in order.items
        ],
        "payments": [
            {
                "kind": payment.kind,
                "status": payment.status,
                "amount": _amount(payment.amount),
                "proof_reference": payment.proof_reference,
                "submitted_at": _iso(payment.submitted_at),
                "verified_at": _iso(payment.verified_at),
            }
            for payment in order.payments
        ],
        "review": {
            "rating": order.review.rating,
            "comment": order.review.comment,
            "created_at": _iso(order.review.created_at),
        } if order.review is not None else None,
        "timeline": [
            {
                "label": event.label,
                "status": event.status,
                "timestamp": _iso(event.timestamp),
                "actor_role": event.actor_role,
                "actor_id": event.actor_id,
                "notes": event.notes,
            }
            for event in order.timeline
        ],
    }
