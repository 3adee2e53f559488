"""
Shared fixtures. The database URL must point at a throwaway SQLite file before
`config` is imported anywhere.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

_db_dir = tempfile.mkdtemp(prefix="fulfillment-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_db_dir, 'fulfillment.db')}"
os.environ.setdefault("DELIVERY_FEES", '{"riyadh": "25.00", "jeddah": "30.00"}')

import pytest
import pytest_asyncio

from database import init_db, drop_db, close_db
from fulfillment import Actor, CartLine, DeliveryHandoff, StaticDeliveryFees

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

CUSTOMER = Actor.of("customer", "cust-1")
SELLER = Actor.of("seller", "seller-1")
ADMIN = Actor.of("administrator", "admin-1")
COURIER = Actor.of("courier", "courier-1")

FEES = StaticDeliveryFees({"riyadh": "25.00", "jeddah": "30.00"})


@pytest_asyncio.fixture
async def db():
    await init_db()
    yield
    await drop_db()
    await close_db()


@pytest.fixture
def machine():
    return DeliveryHandoff(clock=lambda: NOW)


def place_order(machine, *, service=False, deposit=None, price="350.00", proof=None, **kwargs):
    """Create an in-memory order for one line at `price`."""
    return machine.create(
        CUSTOMER, [CartLine("vase-1", 1, Decimal(price))], "seller-1", "riyadh", "12 Olaya St",
        FEES, is_service_order=service, requires_deposit=deposit is not None,
        deposit_amount=deposit or 0, payment_proof=proof, now=NOW, **kwargs,
    )


def approved_order(machine, **kwargs):
    """Order paid in full, verified and approved by an administrator."""
    order = place_order(machine, proof="proofs/full.png", **kwargs)
    machine.verify_payment(order, ADMIN, "full", NOW)
    machine.admin_approve(order, ADMIN, now=NOW)
    return order


def in_production(machine, deadline=None, **kwargs):
    order = approved_order(machine, **kwargs)
    machine.seller_approve(order, SELLER, "Workshop 4, Malaz", deadline or NOW + timedelta(days=3), now=NOW)
    machine.start_work(order, SELLER, NOW)
    return order


def at_door(machine, **kwargs):
    """Order out for delivery with courier-1."""
    order = in_production(machine, **kwargs)
    machine.complete_work(order, SELLER, now=NOW)
    machine.assign_courier(order, ADMIN, "courier-1", NOW)
    machine.pickup(order, COURIER, now=NOW)
    return order
