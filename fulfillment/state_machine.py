"""
OrderStateMachine: owns `status` and the price-negotiation sub-status.

Every operation follows the same order: authorize the actor, check the
guards, apply side effects, append exactly one timeline event and queue one
notification. A failed guard raises; the order is left untouched.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, Optional

from database.models import Order, OrderItem, Review
from .authorizer import Action, RoleAuthorizer
from .clock import as_utc, utcnow
from .deadlines import DeadlineTracker
from .errors import InvalidTransition, ValidationError
from .interfaces import Actor, CartLine, DeliveryFeeLookup
from .ledger import PaymentLedger
from .states import (
    DepositStatus, NotificationType, OrderStatus, PaymentKind, PaymentReviewStatus,
    PriceApprovalStatus, Role, is_valid_transition, status_of,
)
from .timeline import append_event, emit


def _money(value: Any, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} is not a valid amount", guard="invalid_amount", field=field)
    if amount.is_nan() or amount < 0:
        raise ValidationError(f"{field} must be a non-negative amount", guard="invalid_amount", field=field)
    return amount.quantize(Decimal("0.01"))


def _text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class OrderStateMachine:

    def __init__(self, authorizer: Optional[RoleAuthorizer] = None,
                 ledger: Optional[PaymentLedger] = None,
                 deadlines: Optional[DeadlineTracker] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.authorizer = authorizer or RoleAuthorizer()
        self.ledger = ledger or PaymentLedger(self.authorizer)
        self.deadlines = deadlines or DeadlineTracker()
        self.clock = clock

    # Creation

    def create(self, actor: Actor, lines: Iterable[CartLine], seller_id: str, city_id: str,
               delivery_address: str, fee_lookup: DeliveryFeeLookup, *,
               is_service_order: bool = False, requires_deposit: bool = False,
               deposit_amount: Any = 0, proposed_price: Any = None,
               payment_proof: Optional[str] = None, order_id: Optional[str] = None,
               now: Optional[datetime] = None) -> Order:
        """Checkout: turn a cart snapshot into a `pending` order."""
        now = now or self.clock()
        if Role(actor.role) != Role.CUSTOMER:
            raise InvalidTransition("Only customers place orders", guard="role_not_permitted",
                                    role=Role(actor.role).value, action="create")
        if not actor.user_id:
            raise ValidationError("The customer must be identified", guard="missing_actor_id")

        lines = list(lines)
        if not lines:
            raise ValidationError("The cart is empty", guard="empty_cart")
        for line in lines:
            if line.quantity < 1:
                raise ValidationError(
                    f"Quantity for {line.product_id} must be at least 1",
                    guard="invalid_quantity", product_id=line.product_id,
                )
            _money(line.unit_price, "unit_price")
        if not _text(delivery_address):
            raise ValidationError("A delivery address is required", guard="missing_delivery_address")
        if not _text(city_id):
            raise ValidationError("A delivery city is required", guard="missing_city")
        if not _text(seller_id):
            raise ValidationError("The order must name its seller", guard="missing_seller")

        total = sum((_money(line.unit_price, "unit_price") * line.quantity for line in lines), Decimal("0"))
        deposit = _money(deposit_amount or 0, "deposit_amount")
        if requires_deposit:
            if not is_service_order:
                raise ValidationError(
                    "Only service orders take a deposit", guard="deposit_requires_service_order",
                )
            if deposit <= 0:
                raise ValidationError("A deposit amount is required", guard="missing_deposit_amount")
        else:
            deposit = Decimal("0.00")
        if deposit > total:
            raise ValidationError(
                "The deposit cannot exceed the order total",
                guard="deposit_exceeds_total", deposit_amount=deposit, total_price=total,
            )

        order = Order(
            id=order_id or str(uuid.uuid4()),
            status=OrderStatus.PENDING.value,
            customer_id=actor.user_id,
            seller_id=seller_id,
            courier_id=None,
            city_id=city_id,
            delivery_address=delivery_address.strip(),
            is_service_order=bool(is_service_order),
            total_price=total,
            delivery_fee=_money(fee_lookup.fee_for(city_id), "delivery_fee"),
            requires_deposit=bool(requires_deposit),
            deposit_amount=deposit,
            deposit_status=DepositStatus.NOT_PAID.value,
            payment_status=PaymentReviewStatus.PENDING.value,
            is_late=False,
            created_at=now,
            payments=[],
            review=None,
        )
        for position, line in enumerate(lines):
            order.items.append(OrderItem(
                position=position,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=_money(line.unit_price, "unit_price"),
            ))

        if proposed_price is not None:
            self._open_proposal(order, proposed_price)

        append_event(order, "order_created", now, actor)
        emit(order, NotificationType.STATUS_CHANGED, now, previous_status=None)
        logging.info(f"Order {order.id} created for customer {actor.user_id} (total {total})")

        if payment_proof:
            kind = PaymentKind.DEPOSIT if order.requires_deposit else PaymentKind.FULL
            self.ledger.record_proof(order, actor, kind, payment_proof, now)
        return order

    # Payments

    def submit_payment(self, order, actor: Actor, kind: PaymentKind, proof_reference: str,
                       now: Optional[datetime] = None):
        return self.ledger.submit(order, actor, kind, proof_reference, now or self.clock())

    def verify_payment(self, order, actor: Actor, kind: PaymentKind, now: Optional[datetime] = None):
        return self.ledger.verify(order, actor, kind, now or self.clock())

    # Approval chain

    def admin_approve(self, order, actor: Actor, notes: Optional[str] = None,
                      now: Optional[datetime] = None) -> Order:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.ADMIN_APPROVE)
        if not self.ledger.has_verified_upfront_payment(order):
            guard_detail = "deposit" if order.requires_deposit else "full payment"
            raise InvalidTransition(
                f"No verified {guard_detail} proof on file", guard="payment_not_verified",
            )
        return self._transition(order, OrderStatus.ADMIN_APPROVED, "admin_approved", actor, now,
                                notes=_text(notes), changes={"admin_approved_at": now})

    def seller_approve(self, order, actor: Actor, pickup_address: str, deadline: datetime,
                       notes: Optional[str] = None, now: Optional[datetime] = None) -> Order:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.SELLER_APPROVE)
        self._check_edge(order, OrderStatus.SELLER_APPROVED)
        if order.price_approval_status == PriceApprovalStatus.PENDING_APPROVAL.value:
            raise InvalidTransition(
                "The buyer's price proposal must be resolved first", guard="price_approval_pending",
            )
        if not _text(pickup_address):
            raise ValidationError("A pickup address is required", guard="missing_pickup_address")
        if order.completion_deadline is not None:
            raise InvalidTransition("The completion deadline is already set", guard="deadline_already_set")
        self.deadlines.set_deadline(order, deadline, now)
        return self._transition(order, OrderStatus.SELLER_APPROVED, "seller_approved", actor, now,
                                notes=_text(notes),
                                changes={"seller_address": pickup_address.strip(),
                                         "seller_approved_at": now},
                                deadline=as_utc(order.completion_deadline))

    # Price negotiation

    def propose_price(self, order, actor: Actor, proposed_price: Any,
                      now: Optional[datetime] = None) -> Order:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.PROPOSE_PRICE)
        if order.price_approval_status == PriceApprovalStatus.PENDING_APPROVAL.value:
            raise InvalidTransition("A price proposal is already awaiting the seller", guard="proposal_pending")
        if order.price_approval_status == PriceApprovalStatus.APPROVED.value:
            raise InvalidTransition("The price has already been agreed", guard="price_already_agreed")
        self._open_proposal(order, proposed_price)
        append_event(order, "price_proposed", now, actor, notes=str(order.proposed_price))
        return order

    def approve_price(self, order, actor: Actor, notes: Optional[str] = None,
                      now: Optional[datetime] = None) -> Order:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.APPROVE_PRICE)
        self._require_open_proposal(order)
        agreed = Decimal(order.proposed_price)
        if Decimal(order.deposit_amount) > agreed:
            raise ValidationError(
                "The deposit cannot exceed the agreed price",
                guard="deposit_exceeds_total", deposit_amount=order.deposit_amount, total_price=agreed,
            )
        order.total_price = agreed
        order.price_approval_status = PriceApprovalStatus.APPROVED.value
        order.price_approved_at = now
        order.price_approval_notes = _text(notes)
        append_event(order, "price_approved", now, actor, notes=str(agreed))
        return order

    def reject_price(self, order, actor: Actor, notes: Optional[str] = None,
                     now: Optional[datetime] = None) -> Order:
        """Reject and cancel in one step; the order never rests as rejected-but-live."""
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.REJECT_PRICE)
        self._require_open_proposal(order)
        reason = _text(notes) or "Price proposal rejected by seller"
        return self._transition(order, OrderStatus.CANCELLED, "price_rejected", actor, now,
                                notes=reason,
                                changes={"price_approval_status": PriceApprovalStatus.REJECTED.value,
                                         "price_approved_at": now,
                                         "price_approval_notes": _text(notes),
                                         "cancelled_at": now,
                                         "cancellation_reason": reason})

    # Production

    def start_work(self, order, actor: Actor, now: Optional[datetime] = None) -> Order:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.START_WORK)
        self.deadlines.evaluate_lateness(order, now)
        return self._transition(order, OrderStatus.IN_PROGRESS, "work_started", actor, now,
                                changes={"work_started_at": now})

    def complete_work(self, order, actor: Actor, delivery_scheduled_at: Optional[datetime] = None,
                      notes: Optional[str] = None, now: Optional[datetime] = None) -> Order:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.COMPLETE_WORK)
        if delivery_scheduled_at is not None:
            if delivery_scheduled_at.tzinfo is None or as_utc(delivery_scheduled_at) <= as_utc(now):
                raise ValidationError(
                    "The delivery schedule must be a future, timezone-aware time",
                    guard="schedule_not_in_future",
                )
        self.deadlines.evaluate_lateness(order, now)
        return self._transition(order, OrderStatus.READY_FOR_DELIVERY, "work_completed", actor, now,
                                notes=_text(notes),
                                changes={"work_completed_at": now,
                                         "delivery_scheduled_at": as_utc(delivery_scheduled_at)})

    # Completion

    def confirm_receipt(self, order, actor: Actor, now: Optional[datetime] = None) -> Order:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.CONFIRM_RECEIPT)
        if not self.ledger.remaining_settled(order):
            raise InvalidTransition(
                "The remaining balance has not been verified", guard="remaining_payment_unsettled",
                remaining_amount=self.ledger.remaining_amount(order),
            )
        return self._transition(order, OrderStatus.COMPLETED, "completed", actor, now,
                                changes={"completed_at": now})

    def submit_review(self, order, actor: Actor, rating: int, comment: Optional[str] = None,
                      now: Optional[datetime] = None) -> Review:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.REVIEW)
        if order.review is not None:
            raise InvalidTransition("This order has already been reviewed", guard="already_reviewed")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be a whole number from 1 to 5", guard="invalid_rating")
        review = Review(customer_id=actor.user_id, rating=rating, comment=_text(comment), created_at=now)
        order.review = review
        append_event(order, "review_submitted", now, actor, notes=f"{rating}/5")
        return review

    # Cancellation

    def cancel(self, order, actor: Actor, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> Order:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.CANCEL)
        if order.work_started_at is not None:
            raise InvalidTransition("Production has already started", guard="production_started")
        reason = _text(reason)
        return self._transition(order, OrderStatus.CANCELLED, "cancelled", actor, now, notes=reason,
                                changes={"cancelled_at": now, "cancellation_reason": reason})

    # Administration

    def assign_courier(self, order, actor: Actor, courier_id: str,
                       now: Optional[datetime] = None) -> Order:
        now = now or self.clock()
        self.authorizer.authorize(actor, order, Action.ASSIGN_COURIER)
        courier_id = _text(courier_id)
        if not courier_id:
            raise ValidationError("A courier id is required", guard="missing_courier")
        if order.courier_id == courier_id:
            raise InvalidTransition("The courier is already assigned", guard="courier_already_assigned")
        previous = order.courier_id
        order.courier_id = courier_id
        notes = courier_id if previous is None else f"{previous} -> {courier_id}"
        append_event(order, "assigned_to_delivery", now, actor, notes=notes)
        return order

    # Internals

    def _open_proposal(self, order, proposed_price: Any) -> None:
        if not order.is_service_order:
            raise InvalidTransition("Only service orders accept a price proposal", guard="not_negotiable")
        price = _money(proposed_price, "proposed_price")
        if price <= 0:
            raise ValidationError("The proposed price must be positive", guard="invalid_amount",
                                  field="proposed_price")
        listed = Decimal(order.total_price)
        if price == listed:
            raise ValidationError("The proposed price equals the listed price", guard="same_as_listed_price")
        if Decimal(order.deposit_amount) > price:
            raise ValidationError(
                "The deposit cannot exceed the proposed price",
                guard="deposit_exceeds_total", deposit_amount=order.deposit_amount, total_price=price,
            )
        order.original_price = listed
        order.proposed_price = price
        order.price_approval_status = PriceApprovalStatus.PENDING_APPROVAL.value

    @staticmethod
    def _require_open_proposal(order) -> None:
        if order.price_approval_status != PriceApprovalStatus.PENDING_APPROVAL.value:
            raise InvalidTransition("There is no price proposal awaiting a decision", guard="no_pending_proposal")

    @staticmethod
    def _check_edge(order, target: OrderStatus) -> OrderStatus:
        source = status_of(order)
        if not is_valid_transition(source, target):
            raise InvalidTransition(
                f"No transition from {source.value} to {target.value}",
                guard="undefined_transition", source=source.value, target=target.value,
            )
        return source

    def _transition(self, order, target: OrderStatus, label: str, actor: Optional[Actor],
                    now: datetime, notes: Optional[str] = None,
                    changes: Optional[Dict[str, Any]] = None,
                    notification: NotificationType = NotificationType.STATUS_CHANGED,
                    **payload: Any) -> Order:
        source = self._check_edge(order, target)
        for field, value in (changes or {}).items():
            setattr(order, field, value)
        order.status = target.value
        append_event(order, label, now, actor, notes)
        emit(order, notification, now, previous_status=source, **payload)
        logging.info(f"Order {order.id}: {source.value} -> {target.value} ({label})")
        return order
