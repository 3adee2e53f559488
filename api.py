"""
FastAPI-based API for the order fulfillment lifecycle.
Every actor intent maps to one endpoint; the caller's identity arrives in the
X-Actor-Role / X-Actor-Id headers, resolved upstream by the auth layer.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field
from temporalio.client import Client

import business_functions
from config import TASK_QUEUE, TEMPORAL_ADDRESS, TEMPORAL_NAMESPACE
from database import init_db, close_db
from fulfillment import (
    Actor, CartLine, ConcurrentModification, FulfillmentError, InvalidTransition, NotFound,
    PaymentKind, Role, ValidationError,
)
from workflows import DeadlineWatchWorkflow

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()

app = FastAPI(
    title="Order Fulfillment API",
    description="Order lifecycle for the craft marketplace: payments, approvals, production and delivery",
    version="1.0.0",
    lifespan=lifespan,
)

# Request/Response Models
class VersionedRequest(BaseModel):
    expected_version: Optional[int] = None

class NotesRequest(VersionedRequest):
    notes: Optional[str] = None

class CartLineRequest(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal

class CreateOrderRequest(BaseModel):
    items: List[CartLineRequest]
    seller_id: str
    city_id: str
    delivery_address: str
    is_service_order: bool = False
    requires_deposit: bool = False
    deposit_amount: Decimal = Decimal("0")
    proposed_price: Optional[Decimal] = None
    payment_proof: Optional[str] = None  # opaque file-storage reference

class PaymentProofRequest(VersionedRequest):
    kind: PaymentKind
    proof_reference: str

class PriceProposalRequest(VersionedRequest):
    proposed_price: Decimal

class SellerApproveRequest(NotesRequest):
    pickup_address: str
    completion_deadline: datetime

class CompleteWorkRequest(NotesRequest):
    delivery_scheduled_at: Optional[datetime] = None

class AssignCourierRequest(VersionedRequest):
    courier_id: str

class SuspendRequest(VersionedRequest):
    reason: str

class CancelRequest(VersionedRequest):
    reason: Optional[str] = None

class ReviewRequest(VersionedRequest):
    rating: int
    comment: Optional[str] = None

class AcknowledgeRequest(BaseModel):
    ids: List[int] = Field(default_factory=list)

# Guards that mean "you may not do this at all" rather than "not now"
FORBIDDEN_GUARDS = {"role_not_permitted", "not_order_owner", "courier_not_assigned"}

def _http_error(e: FulfillmentError) -> HTTPException:
    """Map a lifecycle error to an HTTP error carrying the failed guard."""
    if isinstance(e, NotFound):
        status_code = 404
    elif isinstance(e, ConcurrentModification):
        status_code = 409
    elif isinstance(e, ValidationError):
        status_code = 422
    elif e.guard in FORBIDDEN_GUARDS:
        status_code = 403
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=e.to_dict())

def get_actor(x_actor_role: str = Header(...), x_actor_id: Optional[str] = Header(None)) -> Actor:
    """Caller identity as resolved by the auth layer."""
    try:
        return Actor.of(x_actor_role, x_actor_id)
    except FulfillmentError as e:
        raise _http_error(e)

def _require_role(actor: Actor, *roles: Role) -> None:
    if actor.role not in roles:
        raise _http_error(InvalidTransition(
            f"Role {actor.role.value} may not access this resource", guard="role_not_permitted",
        ))

# Cached Temporal client
_temporal_client: Optional[Client] = None

async def get_temporal_client() -> Client:
    """Get or create Temporal client."""
    global _temporal_client
    if _temporal_client is None:
        _temporal_client = await Client.connect(TEMPORAL_ADDRESS, namespace=TEMPORAL_NAMESPACE)
    return _temporal_client

async def start_deadline_watch(order_id: str, deadline: str) -> None:
    """Schedule the lateness check at the deadline.

    Lateness is still evaluated on every read, so a missing watch only delays
    the flag until the order is next loaded.
    """
    try:
        client = await get_temporal_client()
        await client.start_workflow(
            DeadlineWatchWorkflow.run,
            args=[order_id, deadline],
            id=f"deadline-watch-{order_id}",
            task_queue=TASK_QUEUE,
        )
    except Exception as e:
        logging.warning(f"Could not start deadline watch for order {order_id}: {e}")

@app.post("/orders", status_code=201)
async def create_order(request: CreateOrderRequest, actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    """Checkout: create a pending order from a cart snapshot."""
    lines = [CartLine(line.product_id, line.quantity, line.unit_price) for line in request.items]
    try:
        return await business_functions.create_order(
            actor, lines, request.seller_id, request.city_id, request.delivery_address,
            is_service_order=request.is_service_order,
            requires_deposit=request.requires_deposit,
            deposit_amount=request.deposit_amount,
            proposed_price=request.proposed_price,
            payment_proof=request.payment_proof,
        )
    except FulfillmentError as e:
        raise _http_error(e)

@app.get("/orders/{order_id}")
async def get_order(order_id: str, actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    """Read model: status, lateness, remaining time, permitted actions and timeline."""
    try:
        return await business_functions.get_order(order_id, actor)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/payments")
async def submit_payment(order_id: str, request: PaymentProofRequest,
                         actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    try:
        return await business_functions.submit_payment(
            order_id, actor, request.kind, request.proof_reference, request.expected_version,
        )
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/payments/{kind}/verify")
async def verify_payment(order_id: str, kind: PaymentKind, request: Optional[VersionedRequest] = None,
                         actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or VersionedRequest()
    try:
        return await business_functions.verify_payment(order_id, actor, kind, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/admin-approve")
async def admin_approve(order_id: str, request: Optional[NotesRequest] = None,
                        actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or NotesRequest()
    try:
        return await business_functions.admin_approve(order_id, actor, request.notes, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/price-proposal")
async def propose_price(order_id: str, request: PriceProposalRequest,
                        actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    try:
        return await business_functions.propose_price(
            order_id, actor, request.proposed_price, request.expected_version,
        )
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/price-proposal/approve")
async def approve_price(order_id: str, request: Optional[NotesRequest] = None,
                        actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or NotesRequest()
    try:
        return await business_functions.approve_price(order_id, actor, request.notes, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/price-proposal/reject")
async def reject_price(order_id: str, request: Optional[NotesRequest] = None,
                       actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or NotesRequest()
    try:
        return await business_functions.reject_price(order_id, actor, request.notes, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/seller-approve")
async def seller_approve(order_id: str, request: SellerApproveRequest,
                         actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    """Seller accepts the order with a pickup address and a future completion deadline."""
    try:
        view = await business_functions.seller_approve(
            order_id, actor, request.pickup_address, request.completion_deadline,
            request.notes, request.expected_version,
        )
    except FulfillmentError as e:
        raise _http_error(e)
    await start_deadline_watch(order_id, view["completion_deadline"])
    return view

@app.post("/orders/{order_id}/start-work")
async def start_work(order_id: str, request: Optional[VersionedRequest] = None,
                     actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or VersionedRequest()
    try:
        return await business_functions.start_work(order_id, actor, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/complete-work")
async def complete_work(order_id: str, request: Optional[CompleteWorkRequest] = None,
                        actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or CompleteWorkRequest()
    try:
        return await business_functions.complete_work(
            order_id, actor, request.delivery_scheduled_at, request.notes, request.expected_version,
        )
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/courier")
async def assign_courier(order_id: str, request: AssignCourierRequest,
                         actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    try:
        return await business_functions.assign_courier(
            order_id, actor, request.courier_id, request.expected_version,
        )
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/pickup")
async def pickup(order_id: str, request: Optional[NotesRequest] = None,
                 actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or NotesRequest()
    try:
        return await business_functions.pickup(order_id, actor, request.notes, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/deliver")
async def deliver(order_id: str, request: Optional[NotesRequest] = None,
                  actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or NotesRequest()
    try:
        return await business_functions.deliver(order_id, actor, request.notes, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/suspend")
async def suspend(order_id: str, request: SuspendRequest,
                  actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    """Courier could not reach the customer; hands the order back to administration."""
    try:
        return await business_functions.suspend(order_id, actor, request.reason, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/confirm-receipt")
async def confirm_receipt(order_id: str, request: Optional[VersionedRequest] = None,
                          actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or VersionedRequest()
    try:
        return await business_functions.confirm_receipt(order_id, actor, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, request: Optional[CancelRequest] = None,
                       actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    request = request or CancelRequest()
    try:
        return await business_functions.cancel_order(order_id, actor, request.reason, request.expected_version)
    except FulfillmentError as e:
        raise _http_error(e)

@app.post("/orders/{order_id}/review")
async def submit_review(order_id: str, request: ReviewRequest,
                        actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    try:
        return await business_functions.submit_review(
            order_id, actor, request.rating, request.comment, request.expected_version,
        )
    except FulfillmentError as e:
        raise _http_error(e)

@app.get("/admin/review-queue")
async def review_queue(actor: Actor = Depends(get_actor)) -> List[Dict[str, Any]]:
    """Orders with payment proofs waiting for an administrator."""
    _require_role(actor, Role.ADMINISTRATOR)
    return await business_functions.review_queue(actor)

@app.get("/admin/ready-for-delivery")
async def ready_for_delivery_queue(actor: Actor = Depends(get_actor)) -> List[Dict[str, Any]]:
    """Finished orders waiting for a courier pickup."""
    _require_role(actor, Role.ADMINISTRATOR)
    return await business_functions.ready_for_delivery_queue(actor)

@app.get("/admin/suspended-orders")
async def all_suspended_orders(actor: Actor = Depends(get_actor)) -> List[Dict[str, Any]]:
    _require_role(actor, Role.ADMINISTRATOR)
    return await business_functions.suspended_orders(actor)

def _require_courier_or_admin(actor: Actor, courier_id: str) -> None:
    _require_role(actor, Role.COURIER, Role.ADMINISTRATOR)
    if actor.role == Role.COURIER and actor.user_id != courier_id:
        raise _http_error(InvalidTransition(
            "Couriers may only list their own orders", guard="courier_not_assigned",
        ))

@app.get("/couriers/{courier_id}/orders")
async def courier_orders(courier_id: str, actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    """Pickups and deliveries assigned to one courier."""
    _require_courier_or_admin(actor, courier_id)
    return await business_functions.courier_orders(courier_id)

@app.get("/couriers/{courier_id}/suspended")
async def courier_suspended_orders(courier_id: str, actor: Actor = Depends(get_actor)) -> List[Dict[str, Any]]:
    _require_courier_or_admin(actor, courier_id)
    return await business_functions.suspended_orders(actor, courier_id)

@app.get("/couriers/{courier_id}/stats")
async def courier_stats(courier_id: str, actor: Actor = Depends(get_actor)) -> Dict[str, int]:
    """Pending pickups, pending deliveries, suspensions and completed trips."""
    _require_courier_or_admin(actor, courier_id)
    return await business_functions.courier_stats(courier_id)

@app.get("/notifications")
async def fetch_notifications(limit: int = 100, actor: Actor = Depends(get_actor)) -> List[Dict[str, Any]]:
    """Outbox feed for the external notifier."""
    _require_role(actor, Role.ADMINISTRATOR)
    return await business_functions.fetch_notifications(limit)

@app.post("/notifications/ack")
async def acknowledge_notifications(request: AcknowledgeRequest,
                                    actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    _require_role(actor, Role.ADMINISTRATOR)
    acknowledged = await business_functions.acknowledge_notifications(request.ids)
    return {"acknowledged": acknowledged}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
