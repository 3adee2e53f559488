"""
Tests for the order state machine, run on in-memory orders.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from fulfillment import (
    ALLOWED_TRANSITIONS, CartLine, InvalidTransition, OrderStatus, StaticDeliveryFees, ValidationError,
)
from conftest import (
    ADMIN, COURIER, CUSTOMER, FEES, NOW, SELLER, approved_order, at_door, in_production, place_order,
)


def labels(order):
    return [event.label for event in order.timeline]


def assert_history_follows_graph(order):
    statuses = []
    for event in order.timeline:
        if not statuses or statuses[-1] != event.status:
            statuses.append(event.status)
    for source, target in zip(statuses, statuses[1:]):
        assert OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(source)], (source, target)


def test_create_order(machine):
    order = place_order(machine)

    assert order.status == OrderStatus.PENDING.value
    assert order.customer_id == "cust-1"
    assert order.total_price == Decimal("350.00")
    assert order.delivery_fee == Decimal("25.00")
    assert order.is_late is False
    assert labels(order) == ["order_created"]
    assert [n.type for n in order.notifications] == ["status_changed"]


def test_create_order_with_proof_records_pending_payment(machine):
    order = place_order(machine, proof="proofs/transfer.jpg")

    assert len(order.payments) == 1
    assert order.payments[0].kind == "full"
    assert order.payments[0].status == "pending"
    assert labels(order) == ["order_created", "payment_submitted"]


@pytest.mark.parametrize("kwargs,guard", [
    ({"lines": []}, "empty_cart"),
    ({"lines": [CartLine("vase-1", 0, Decimal("10"))]}, "invalid_quantity"),
    ({"delivery_address": "  "}, "missing_delivery_address"),
])
def test_create_rejects_bad_checkout(machine, kwargs, guard):
    args = {
        "lines": [CartLine("vase-1", 1, Decimal("10"))],
        "delivery_address": "12 Olaya St",
    }
    args.update(kwargs)
    with pytest.raises(ValidationError) as exc:
        machine.create(CUSTOMER, args["lines"], "seller-1", "riyadh", args["delivery_address"], FEES, now=NOW)
    assert exc.value.guard == guard


def test_create_unknown_city(machine):
    with pytest.raises(ValidationError) as exc:
        machine.create(CUSTOMER, [CartLine("vase-1", 1, Decimal("10"))], "seller-1", "dammam",
                       "12 Olaya St", FEES, now=NOW)
    assert exc.value.guard == "unknown_city"


def test_unlisted_city_uses_default_fee(machine):
    free = StaticDeliveryFees({}, default="0")
    order = machine.create(CUSTOMER, [CartLine("vase-1", 1, Decimal("10"))], "seller-1", "dammam",
                           "12 Olaya St", free, now=NOW)
    assert order.delivery_fee == Decimal("0")

    flat = StaticDeliveryFees({"riyadh": "25.00"}, default="40.00")
    assert flat.fee_for("riyadh") == Decimal("25.00")
    assert flat.fee_for("abha") == Decimal("40.00")


def test_new_order_starts_without_payments_or_review(machine):
    order = place_order(machine)
    assert order.payments == []
    assert order.review is None


def test_only_customers_create_orders(machine):
    with pytest.raises(InvalidTransition) as exc:
        machine.create(SELLER, [CartLine("vase-1", 1, Decimal("10"))], "seller-1", "riyadh",
                       "12 Olaya St", FEES, now=NOW)
    assert exc.value.guard == "role_not_permitted"


def test_deposit_only_on_service_orders(machine):
    with pytest.raises(ValidationError) as exc:
        place_order(machine, deposit="105.00")
    assert exc.value.guard == "deposit_requires_service_order"


def test_deposit_cannot_exceed_total(machine):
    with pytest.raises(ValidationError) as exc:
        place_order(machine, service=True, deposit="400.00")
    assert exc.value.guard == "deposit_exceeds_total"


def test_admin_approval_requires_verified_payment(machine):
    order = place_order(machine, proof="proofs/full.png")

    with pytest.raises(InvalidTransition) as exc:
        machine.admin_approve(order, ADMIN, now=NOW)
    assert exc.value.guard == "payment_not_verified"
    assert order.status == OrderStatus.PENDING.value


def test_full_lifecycle_to_review(machine):
    order = at_door(machine)
    machine.deliver(order, COURIER, now=NOW)
    machine.confirm_receipt(order, CUSTOMER, NOW)
    machine.submit_review(order, CUSTOMER, 5, "Beautiful glaze", NOW)

    assert order.status == OrderStatus.COMPLETED.value
    assert order.completed_at == NOW
    assert order.review.rating == 5
    assert labels(order) == [
        "order_created", "payment_submitted", "payment_verified", "admin_approved",
        "seller_approved", "work_started", "work_completed", "assigned_to_delivery",
        "picked_up", "delivered", "completed", "review_submitted",
    ]
    assert_history_follows_graph(order)


def test_deposit_order_scenario(machine):
    order = place_order(machine, service=True, deposit="105.00")

    machine.submit_payment(order, CUSTOMER, "deposit", "proofs/deposit.png", NOW)
    machine.verify_payment(order, ADMIN, "deposit", NOW)
    assert order.deposit_status == "paid"
    machine.admin_approve(order, ADMIN, now=NOW)
    assert order.status == OrderStatus.ADMIN_APPROVED.value

    machine.seller_approve(order, SELLER, "Workshop 4, Malaz", NOW + timedelta(days=3), now=NOW)
    assert order.status == OrderStatus.SELLER_APPROVED.value
    machine.start_work(order, SELLER, NOW)

    machine.submit_payment(order, CUSTOMER, "remaining", "proofs/rest.png", NOW)
    assert order.status == OrderStatus.IN_PROGRESS.value
    assert order.payment_status == "pending"
    assert order.remaining_payment_proof == "proofs/rest.png"
    remaining = machine.ledger.current(order, "remaining")
    assert remaining.amount == Decimal("245.00")
    assert Decimal(order.deposit_amount) <= Decimal(order.total_price)


def test_seller_deadline_must_be_in_future(machine):
    order = approved_order(machine)

    for deadline in (NOW, NOW - timedelta(hours=1)):
        with pytest.raises(ValidationError) as exc:
            machine.seller_approve(order, SELLER, "Workshop 4", deadline, now=NOW)
        assert exc.value.guard == "deadline_not_in_future"
    assert order.status == OrderStatus.ADMIN_APPROVED.value
    assert order.completion_deadline is None


def test_seller_deadline_must_carry_timezone(machine):
    order = approved_order(machine)
    with pytest.raises(ValidationError) as exc:
        machine.seller_approve(order, SELLER, "Workshop 4", (NOW + timedelta(days=1)).replace(tzinfo=None), now=NOW)
    assert exc.value.guard == "naive_deadline"


def test_seller_approval_requires_pickup_address(machine):
    order = approved_order(machine)
    with pytest.raises(ValidationError) as exc:
        machine.seller_approve(order, SELLER, "", NOW + timedelta(days=1), now=NOW)
    assert exc.value.guard == "missing_pickup_address"


def test_price_proposal_approved(machine):
    order = place_order(machine, service=True, proposed_price="300.00")
    assert order.price_approval_status == "pending_approval"
    assert order.original_price == Decimal("350.00")

    machine.approve_price(order, SELLER, "Fine by me", NOW)

    assert order.total_price == Decimal("300.00")
    assert order.price_approval_status == "approved"
    assert order.status == OrderStatus.PENDING.value


def test_price_proposal_blocks_seller_approval(machine):
    order = approved_order(machine, service=True)
    machine.propose_price(order, CUSTOMER, "320.00", NOW)

    with pytest.raises(InvalidTransition) as exc:
        machine.seller_approve(order, SELLER, "Workshop 4", NOW + timedelta(days=2), now=NOW)
    assert exc.value.guard == "price_approval_pending"


def test_rejecting_price_cancels_order(machine):
    order = place_order(machine, service=True, proposed_price="200.00")
    before = len(order.timeline)

    machine.reject_price(order, SELLER, "Materials cost more", NOW)

    assert order.status == OrderStatus.CANCELLED.value
    assert order.price_approval_status == "rejected"
    assert order.cancelled_at == NOW
    assert labels(order)[before:] == ["price_rejected"]


def test_price_proposal_not_allowed_on_fixed_price_orders(machine):
    order = place_order(machine)
    with pytest.raises(InvalidTransition) as exc:
        machine.propose_price(order, CUSTOMER, "300.00", NOW)
    assert exc.value.guard == "not_negotiable"


def test_second_proposal_while_one_is_open(machine):
    order = place_order(machine, service=True, proposed_price="300.00")
    with pytest.raises(InvalidTransition) as exc:
        machine.propose_price(order, CUSTOMER, "310.00", NOW)
    assert exc.value.guard == "proposal_pending"


def test_customer_cancels_before_production(machine):
    order = place_order(machine)
    machine.cancel(order, CUSTOMER, now=NOW)

    assert order.status == OrderStatus.CANCELLED.value
    assert order.cancellation_reason is None
    with pytest.raises(InvalidTransition) as exc:
        machine.cancel(order, CUSTOMER, "again", NOW)
    assert exc.value.guard == "wrong_status"


def test_no_cancel_once_production_started(machine):
    order = in_production(machine)
    with pytest.raises(InvalidTransition) as exc:
        machine.cancel(order, SELLER, "Out of clay", NOW)
    assert exc.value.guard == "wrong_status"
    assert order.status == OrderStatus.IN_PROGRESS.value


def test_confirm_receipt_needs_settled_remaining_balance(machine):
    order = place_order(machine, service=True, deposit="105.00")
    machine.submit_payment(order, CUSTOMER, "deposit", "proofs/deposit.png", NOW)
    machine.verify_payment(order, ADMIN, "deposit", NOW)
    machine.admin_approve(order, ADMIN, now=NOW)
    machine.seller_approve(order, SELLER, "Workshop 4", NOW + timedelta(days=3), now=NOW)
    machine.start_work(order, SELLER, NOW)
    machine.complete_work(order, SELLER, now=NOW)
    machine.assign_courier(order, ADMIN, "courier-1", NOW)
    machine.pickup(order, COURIER, now=NOW)
    machine.deliver(order, COURIER, now=NOW)

    with pytest.raises(InvalidTransition) as exc:
        machine.confirm_receipt(order, CUSTOMER, NOW)
    assert exc.value.guard == "remaining_payment_unsettled"

    machine.submit_payment(order, CUSTOMER, "remaining", "proofs/rest.png", NOW)
    machine.verify_payment(order, ADMIN, "remaining", NOW)
    machine.confirm_receipt(order, CUSTOMER, NOW)
    assert order.status == OrderStatus.COMPLETED.value


def test_complete_work_schedule_must_be_future(machine):
    order = in_production(machine)
    with pytest.raises(ValidationError) as exc:
        machine.complete_work(order, SELLER, NOW - timedelta(minutes=5), now=NOW)
    assert exc.value.guard == "schedule_not_in_future"

    machine.complete_work(order, SELLER, NOW + timedelta(days=1), now=NOW)
    assert order.delivery_scheduled_at == NOW + timedelta(days=1)


def test_review_rules(machine):
    order = at_door(machine)
    machine.deliver(order, COURIER, now=NOW)
    machine.confirm_receipt(order, CUSTOMER, NOW)

    with pytest.raises(ValidationError) as exc:
        machine.submit_review(order, CUSTOMER, 6, now=NOW)
    assert exc.value.guard == "invalid_rating"

    machine.submit_review(order, CUSTOMER, 4, now=NOW)
    with pytest.raises(InvalidTransition) as exc:
        machine.submit_review(order, CUSTOMER, 5, now=NOW)
    assert exc.value.guard == "already_reviewed"


def test_courier_reassignment(machine):
    order = in_production(machine)
    machine.complete_work(order, SELLER, now=NOW)
    machine.assign_courier(order, ADMIN, "courier-1", NOW)

    with pytest.raises(InvalidTransition) as exc:
        machine.assign_courier(order, ADMIN, "courier-1", NOW)
    assert exc.value.guard == "courier_already_assigned"

    machine.assign_courier(order, ADMIN, "courier-2", NOW)
    assert order.courier_id == "courier-2"
    assert order.timeline[-1].notes == "courier-1 -> courier-2"


def test_failed_guard_leaves_order_untouched(machine):
    order = place_order(machine)
    events, notifications = len(order.timeline), len(order.notifications)

    with pytest.raises(InvalidTransition):
        machine.confirm_receipt(order, CUSTOMER, NOW)

    assert order.status == OrderStatus.PENDING.value
    assert len(order.timeline) == events
    assert len(order.notifications) == notifications
