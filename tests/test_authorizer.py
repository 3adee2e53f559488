"""
Tests for the (role, status) permission table.
"""
import pytest

from fulfillment import (
    Action, Actor, InvalidTransition, OrderStatus, PERMISSIONS, Role, RoleAuthorizer, ValidationError,
)
from fulfillment.states import is_valid_transition
from conftest import ADMIN, COURIER, CUSTOMER, SELLER, at_door, place_order

# Actions that move `status`, and where they move it
TARGETS = {
    Action.ADMIN_APPROVE: OrderStatus.ADMIN_APPROVED,
    Action.SELLER_APPROVE: OrderStatus.SELLER_APPROVED,
    Action.START_WORK: OrderStatus.IN_PROGRESS,
    Action.COMPLETE_WORK: OrderStatus.READY_FOR_DELIVERY,
    Action.PICKUP: OrderStatus.OUT_FOR_DELIVERY,
    Action.DELIVER: OrderStatus.DELIVERED,
    Action.SUSPEND: OrderStatus.SUSPENDED,
    Action.CONFIRM_RECEIPT: OrderStatus.COMPLETED,
    Action.CANCEL: OrderStatus.CANCELLED,
    Action.REJECT_PRICE: OrderStatus.CANCELLED,
}


def test_permitted_transitions_follow_the_graph():
    for (role, status), actions in PERMISSIONS.items():
        for action in actions & set(TARGETS):
            assert is_valid_transition(status, TARGETS[action]), (role, status, action)


def test_cancelled_orders_permit_nothing():
    authorizer = RoleAuthorizer()
    for role in Role:
        assert authorizer.allowed(role, OrderStatus.CANCELLED) == frozenset()


def test_customer_actions_on_pending_order(machine):
    order = place_order(machine)
    actions = RoleAuthorizer().permitted_actions(CUSTOMER, order)
    assert actions == {Action.SUBMIT_FULL_PAYMENT, Action.SUBMIT_DEPOSIT, Action.PROPOSE_PRICE, Action.CANCEL}


def test_strangers_see_no_actions(machine):
    order = place_order(machine)
    assert RoleAuthorizer().permitted_actions(Actor.of("customer", "cust-2"), order) == frozenset()
    assert RoleAuthorizer().permitted_actions(ADMIN, order) == {
        Action.ADMIN_APPROVE, Action.VERIFY_PAYMENT, Action.CANCEL,
    }


def test_role_checked_before_status(machine):
    order = place_order(machine)
    with pytest.raises(InvalidTransition) as exc:
        RoleAuthorizer().authorize(COURIER, order, Action.ADMIN_APPROVE)
    assert exc.value.guard == "role_not_permitted"


def test_status_checked_before_ownership(machine):
    order = place_order(machine)
    with pytest.raises(InvalidTransition) as exc:
        RoleAuthorizer().authorize(Actor.of("seller", "seller-9"), order, Action.START_WORK)
    assert exc.value.guard == "wrong_status"


def test_seller_must_own_order(machine):
    order = place_order(machine, service=True, proposed_price="300.00")
    with pytest.raises(InvalidTransition) as exc:
        RoleAuthorizer().authorize(Actor.of("seller", "seller-9"), order, Action.APPROVE_PRICE)
    assert exc.value.guard == "not_order_owner"
    RoleAuthorizer().authorize(SELLER, order, Action.APPROVE_PRICE)


def test_courier_must_be_assigned(machine):
    order = at_door(machine)
    with pytest.raises(InvalidTransition) as exc:
        RoleAuthorizer().authorize(Actor.of("courier", "courier-2"), order, Action.DELIVER)
    assert exc.value.guard == "courier_not_assigned"


def test_error_body_names_guard(machine):
    order = place_order(machine)
    with pytest.raises(InvalidTransition) as exc:
        RoleAuthorizer().authorize(SELLER, order, Action.CONFIRM_RECEIPT)
    body = exc.value.to_dict()
    assert body["error"] == "invalid_transition"
    assert body["guard"] == "role_not_permitted"
    assert body["context"]["action"] == "confirm_receipt"


def test_unknown_role():
    with pytest.raises(ValidationError) as exc:
        Actor.of("janitor", "x")
    assert exc.value.guard == "unknown_role"
