"""
Business functions that implement the database-bound order operations.
These functions are called by the API and by the Temporal activities. Each one
loads an order, runs a single lifecycle operation on it and commits the status
change, its side-effect fields, the timeline event and the outbox row together.
"""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified, set_committed_value
from sqlalchemy.orm.exc import StaleDataError

from config import DEFAULT_DELIVERY_FEE, DELIVERY_FEES
from database import get_db, Order, Payment, NotificationEvent
from fulfillment import (
    Actor, CartLine, ConcurrentModification, DeliveryHandoff, NotFound, OrderStatus,
    PaymentKind, PaymentReviewStatus, PRODUCTION_STATES, StaticDeliveryFees, order_view,
)
from fulfillment.clock import as_utc, utcnow

# Reduce SQLAlchemy logging noise - show errors but not all SQL
logging.getLogger('sqlalchemy.engine').setLevel(logging.ERROR)
logging.getLogger('sqlalchemy.pool').setLevel(logging.ERROR)
logging.getLogger('sqlalchemy.orm').setLevel(logging.ERROR)

machine = DeliveryHandoff()
fee_lookup = StaticDeliveryFees(DELIVERY_FEES, default=DEFAULT_DELIVERY_FEE)

orders_table = Order.__table__


async def _load_order(session, order_id: str) -> Order:
    order = await session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFound(f"Order {order_id} not found", guard="unknown_order", order_id=order_id)
    return order


async def _flag_if_late(session, order: Order, now: datetime) -> bool:
    """Lazy lateness evaluation on load.

    The flag is set with a conditional UPDATE that leaves the version alone, so
    concurrent readers flag at most once and never conflict with a writer.
    """
    if order.is_late or not machine.deadlines.is_overdue(order, now):
        return False

    result = await session.execute(
        update(orders_table)
        .where(
            orders_table.c.id == order.id,
            orders_table.c.is_late.is_(False),
            orders_table.c.status.in_([status.value for status in PRODUCTION_STATES]),
        )
        .values(is_late=True)
    )
    if result.rowcount != 1:
        # Another reader got there first, or the order just left production
        await session.commit()
        await session.refresh(order, attribute_names=["is_late", "status", "version"])
        return False

    set_committed_value(order, "is_late", True)
    machine.deadlines.record_lateness(order, now)
    await session.commit()
    return True


async def _run(order_id: str, label: str, operation: Callable[[Order, datetime], Any],
               actor: Optional[Actor], expected_version: Optional[int] = None,
               now: Optional[datetime] = None) -> Dict[str, Any]:
    """Load, check version, apply one operation and commit it as one unit."""
    start_time = time.time()
    now = as_utc(now) if now else utcnow()

    async with get_db() as session:
        order = await _load_order(session, order_id)
        await _flag_if_late(session, order, now)

        if expected_version is not None and order.version != expected_version:
            raise ConcurrentModification(
                f"Order {order_id} changed since version {expected_version}",
                guard="stale_version", expected_version=expected_version, current_version=order.version,
            )

        operation(order, now)
        # Always UPDATE the order row, so changes that only touch payments,
        # timeline or review rows still go through the version check
        order.updated_at = now
        flag_modified(order, "updated_at")

        try:
            await session.commit()
        except (StaleDataError, IntegrityError) as e:
            await session.rollback()
            logging.info(f"Order {order_id} {label} lost a concurrent update: {e}")
            raise ConcurrentModification(
                f"Order {order_id} was modified concurrently; re-read it and try again",
                guard="concurrent_update",
            )

        elapsed = time.time() - start_time
        logging.info(f"Order {order_id} {label} committed at version {order.version} (took {elapsed:.3f}s)")
        return order_view(order, actor, now, machine)


async def create_order(actor: Actor, lines: Iterable[CartLine], seller_id: str, city_id: str,
                       delivery_address: str, *, is_service_order: bool = False,
                       requires_deposit: bool = False, deposit_amount: Any = 0,
                       proposed_price: Any = None, payment_proof: Optional[str] = None,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
    """Checkout a cart snapshot into a new pending order."""
    start_time = time.time()
    now = as_utc(now) if now else utcnow()

    order = machine.create(
        actor, lines, seller_id, city_id, delivery_address, fee_lookup,
        is_service_order=is_service_order, requires_deposit=requires_deposit,
        deposit_amount=deposit_amount, proposed_price=proposed_price,
        payment_proof=payment_proof, now=now,
    )
    async with get_db() as session:
        session.add(order)
        await session.commit()
        view = order_view(order, actor, now, machine)

    elapsed = time.time() - start_time
    logging.info(f"Order {order.id} received and stored (took {elapsed:.3f}s)")
    return view


async def get_order(order_id: str, actor: Actor, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Read model for one order; evaluates lateness on the way."""
    now = as_utc(now) if now else utcnow()
    async with get_db() as session:
        order = await _load_order(session, order_id)
        if not machine.authorizer.owns(actor, order):
            raise NotFound(f"Order {order_id} not found", guard="unknown_order", order_id=order_id)
        await _flag_if_late(session, order, now)
        return order_view(order, actor, now, machine)


async def submit_payment(order_id: str, actor: Actor, kind: PaymentKind, proof_reference: str,
                         expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, f"{PaymentKind(kind).value} payment submitted",
        lambda order, at: machine.submit_payment(order, actor, kind, proof_reference, at),
        actor, expected_version, now,
    )


async def verify_payment(order_id: str, actor: Actor, kind: PaymentKind,
                         expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, f"{PaymentKind(kind).value} payment verified",
        lambda order, at: machine.verify_payment(order, actor, kind, at),
        actor, expected_version, now,
    )


async def admin_approve(order_id: str, actor: Actor, notes: Optional[str] = None,
                        expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "admin approval",
        lambda order, at: machine.admin_approve(order, actor, notes, at),
        actor, expected_version, now,
    )


async def propose_price(order_id: str, actor: Actor, proposed_price: Any,
                        expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "price proposal",
        lambda order, at: machine.propose_price(order, actor, proposed_price, at),
        actor, expected_version, now,
    )


async def approve_price(order_id: str, actor: Actor, notes: Optional[str] = None,
                        expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "price approval",
        lambda order, at: machine.approve_price(order, actor, notes, at),
        actor, expected_version, now,
    )


async def reject_price(order_id: str, actor: Actor, notes: Optional[str] = None,
                       expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "price rejection",
        lambda order, at: machine.reject_price(order, actor, notes, at),
        actor, expected_version, now,
    )


async def seller_approve(order_id: str, actor: Actor, pickup_address: str, deadline: datetime,
                         notes: Optional[str] = None, expected_version: Optional[int] = None,
                         now: Optional[datetime] = None):
    return await _run(
        order_id, "seller approval",
        lambda order, at: machine.seller_approve(order, actor, pickup_address, deadline, notes, at),
        actor, expected_version, now,
    )


async def start_work(order_id: str, actor: Actor, expected_version: Optional[int] = None,
                     now: Optional[datetime] = None):
    return await _run(
        order_id, "work start",
        lambda order, at: machine.start_work(order, actor, at),
        actor, expected_version, now,
    )


async def complete_work(order_id: str, actor: Actor, delivery_scheduled_at: Optional[datetime] = None,
                        notes: Optional[str] = None, expected_version: Optional[int] = None,
                        now: Optional[datetime] = None):
    return await _run(
        order_id, "work completion",
        lambda order, at: machine.complete_work(order, actor, delivery_scheduled_at, notes, at),
        actor, expected_version, now,
    )


async def assign_courier(order_id: str, actor: Actor, courier_id: str,
                         expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "courier assignment",
        lambda order, at: machine.assign_courier(order, actor, courier_id, at),
        actor, expected_version, now,
    )


async def pickup(order_id: str, actor: Actor, notes: Optional[str] = None,
                 expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "courier pickup",
        lambda order, at: machine.pickup(order, actor, notes, at),
        actor, expected_version, now,
    )


async def deliver(order_id: str, actor: Actor, notes: Optional[str] = None,
                  expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "delivery",
        lambda order, at: machine.deliver(order, actor, notes, at),
        actor, expected_version, now,
    )


async def suspend(order_id: str, actor: Actor, reason: str,
                  expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "suspension",
        lambda order, at: machine.suspend(order, actor, reason, at),
        actor, expected_version, now,
    )


async def confirm_receipt(order_id: str, actor: Actor, expected_version: Optional[int] = None,
                          now: Optional[datetime] = None):
    return await _run(
        order_id, "receipt confirmation",
        lambda order, at: machine.confirm_receipt(order, actor, at),
        actor, expected_version, now,
    )


async def cancel_order(order_id: str, actor: Actor, reason: Optional[str] = None,
                       expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "cancellation",
        lambda order, at: machine.cancel(order, actor, reason, at),
        actor, expected_version, now,
    )


async def submit_review(order_id: str, actor: Actor, rating: int, comment: Optional[str] = None,
                        expected_version: Optional[int] = None, now: Optional[datetime] = None):
    return await _run(
        order_id, "review",
        lambda order, at: machine.submit_review(order, actor, rating, comment, at),
        actor, expected_version, now,
    )


async def flag_if_late(order_id: str, now: Optional[datetime] = None) -> bool:
    """Evaluate lateness for one order outside any actor's read."""
    now = as_utc(now) if now else utcnow()
    async with get_db() as session:
        order = await _load_order(session, order_id)
        return await _flag_if_late(session, order, now)


async def sweep_late_orders(now: Optional[datetime] = None) -> int:
    """Flag every order in production whose deadline has passed."""
    start_time = time.time()
    now = as_utc(now) if now else utcnow()

    async with get_db() as session:
        result = await session.execute(
            select(Order.id).where(
                Order.status.in_([status.value for status in PRODUCTION_STATES]),
                Order.is_late.is_(False),
                Order.completion_deadline.is_not(None),
                Order.completion_deadline < now,
            ).order_by(Order.completion_deadline)
        )
        candidates = list(result.scalars())

    flagged = 0
    for order_id in candidates:
        if await flag_if_late(order_id, now):
            flagged += 1
            logging.info(f"Order {order_id} marked as late - deadline passed before ready_for_delivery")

    elapsed = time.time() - start_time
    logging.info(f"Updated {flagged} of {len(candidates)} orders as late (took {elapsed:.3f}s)")
    return flagged


async def _load_listing(session, statement, now: datetime) -> List[Order]:
    """Orders for a listing, each with its lateness evaluated as on a single read."""
    orders = list((await session.execute(statement)).scalars())
    for order in orders:
        await _flag_if_late(session, order, now)
    return orders


async def review_queue(actor: Actor, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Orders with a payment proof awaiting administrator verification, oldest first."""
    now = as_utc(now) if now else utcnow()
    async with get_db() as session:
        orders = await _load_listing(
            session,
            select(Order)
            .where(Order.payments.any(Payment.status == PaymentReviewStatus.PENDING.value))
            .where(Order.status.not_in([OrderStatus.CANCELLED.value, OrderStatus.COMPLETED.value]))
            .order_by(Order.created_at),
            now,
        )
        return [order_view(order, actor, now, machine) for order in orders]


async def ready_for_delivery_queue(actor: Actor, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Finished orders waiting for pickup, earliest scheduled delivery first."""
    now = as_utc(now) if now else utcnow()
    async with get_db() as session:
        orders = await _load_listing(
            session,
            select(Order)
            .where(Order.status == OrderStatus.READY_FOR_DELIVERY.value)
            .order_by(Order.delivery_scheduled_at, Order.created_at),
            now,
        )
        return [order_view(order, actor, now, machine) for order in orders]


async def suspended_orders(actor: Actor, courier_id: Optional[str] = None,
                           now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Suspended orders, most recently suspended first.

    With a courier_id only that courier's orders are listed; without one
    every suspended order is, which is the administrator's view.
    """
    now = as_utc(now) if now else utcnow()
    statement = select(Order).where(Order.status == OrderStatus.SUSPENDED.value)
    if courier_id is not None:
        statement = statement.where(Order.courier_id == courier_id)
    async with get_db() as session:
        orders = await _load_listing(
            session, statement.order_by(Order.suspended_at.desc(), Order.created_at), now,
        )
        return [order_view(order, actor, now, machine) for order in orders]


async def courier_orders(courier_id: str, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
    """Pickups and deliveries assigned to a courier, split by courier-facing status."""
    now = as_utc(now) if now else utcnow()
    actor = Actor.of("courier", courier_id)
    async with get_db() as session:
        orders = await _load_listing(
            session,
            select(Order)
            .where(Order.courier_id == courier_id)
            .where(Order.status.in_([OrderStatus.READY_FOR_DELIVERY.value,
                                     OrderStatus.OUT_FOR_DELIVERY.value]))
            .order_by(Order.delivery_scheduled_at, Order.created_at),
            now,
        )
        pickups, deliveries = [], []
        for order in orders:
            view = order_view(order, actor, now, machine)
            if machine.courier_status(order) == OrderStatus.OUT_FOR_DELIVERY:
                deliveries.append(view)
            else:
                pickups.append(view)
        return {"pickups": pickups, "deliveries": deliveries}


async def courier_stats(courier_id: str) -> Dict[str, int]:
    """Workload counters for a courier's dashboard."""
    async with get_db() as session:
        result = await session.execute(
            select(Order.status, Order.delivery_picked_up_at, func.count(Order.id))
            .where(Order.courier_id == courier_id)
            .group_by(Order.status, Order.delivery_picked_up_at)
        )
        rows = result.all()

    stats = {"pending_pickups": 0, "pending_deliveries": 0, "suspended": 0, "trips_count": 0}
    for row in rows:
        status = machine.courier_status(row)
        if status == OrderStatus.READY_FOR_DELIVERY:
            stats["pending_pickups"] += row[2]
        elif status == OrderStatus.OUT_FOR_DELIVERY:
            stats["pending_deliveries"] += row[2]
        elif status == OrderStatus.SUSPENDED:
            stats["suspended"] += row[2]
        elif status in (OrderStatus.DELIVERED, OrderStatus.COMPLETED):
            stats["trips_count"] += row[2]
    return stats


async def fetch_notifications(limit: int = 100) -> List[Dict[str, Any]]:
    """Undispatched outbox events, oldest first."""
    async with get_db() as session:
        result = await session.execute(
            select(NotificationEvent)
            .where(NotificationEvent.dispatched_at.is_(None))
            .order_by(NotificationEvent.id)
            .limit(limit)
        )
        return [
            {
                "id": event.id,
                "order_id": event.order_id,
                "type": event.type,
                "payload": event.payload_json,
                "ts": as_utc(event.ts).isoformat(),
            }
            for event in result.scalars()
        ]


async def acknowledge_notifications(event_ids: List[int], now: Optional[datetime] = None) -> int:
    """Mark outbox events as handed to the notifier."""
    if not event_ids:
        return 0
    now = as_utc(now) if now else utcnow()
    async with get_db() as session:
        result = await session.execute(
            update(NotificationEvent.__table__)
            .where(
                NotificationEvent.__table__.c.id.in_(event_ids),
                NotificationEvent.__table__.c.dispatched_at.is_(None),
            )
            .values(dispatched_at=now)
        )
        await session.commit()
        return result.rowcount
