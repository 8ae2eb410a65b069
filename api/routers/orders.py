"""
Orders API Endpoints.

Endpoints for checkout, order lookup, fulfillment (shipments, delivery) and
manual transitions (cancel, hold, resume), order notes, and the customer and
store order listings.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_actor, get_engine, unwrap
from api.models import (
    AddOrderNoteRequest,
    CancelOrderRequest,
    CheckoutRequest,
    ConfirmDeliveryRequest,
    CreateShipmentRequest,
    HoldOrderRequest,
    OrderEventResponse,
    OrderHistoryResponse,
    OrderResponse,
)
from domain.actor import ActorContext
from domain.order import OrderStatus
from services.engine import FulfillmentEngine

router = APIRouter()


@router.post(
    "/checkout",
    response_model=OrderResponse,
    status_code=201,
    summary="Checkout",
    description="Convert the cart into a pending, unpaid order in one atomic step."
)
def checkout(
    request: CheckoutRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """
    Checkout a cart.

    **Process:**
    1. Verifies the cart is active, not empty, and every line is still held
    2. Recomputes totals (coupons are re-evaluated)
    3. Creates the order and its items, moves the cart's reservations to the
       order, marks the cart converted and records coupon redemptions

    Either all of step 3 happens or none of it does.
    """
    return OrderResponse.from_order(unwrap(engine.checkout(actor, request.cart_id)))


@router.get("/orders", response_model=List[OrderResponse], summary="List My Orders")
def list_customer_orders(
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """Orders of the calling account or guest device, newest first."""
    return [OrderResponse.from_order(o) for o in unwrap(engine.list_customer_orders(actor))]


@router.get(
    "/stores/{store_id}/orders",
    response_model=List[OrderResponse],
    summary="List Store Orders",
    description="Orders placed with a store, newest first (store owner only)."
)
def list_store_orders(
    store_id: UUID,
    status: Optional[OrderStatus] = Query(None, description="Only orders in this status"),
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    return [OrderResponse.from_order(o) for o in unwrap(engine.list_store_orders(actor, store_id, status))]


@router.get("/orders/{order_id}", response_model=OrderResponse, summary="Get Order")
def get_order(
    order_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    return OrderResponse.from_order(unwrap(engine.get_order(actor, order_id)))


@router.get("/orders/{order_id}/history", response_model=OrderHistoryResponse, summary="Get Order History")
def get_order_history(
    order_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """Event log of the order and the status rebuilt by replaying it."""
    events, snapshot = unwrap(engine.get_order_history(actor, order_id))
    return OrderHistoryResponse(
        events=[OrderEventResponse.from_event(e) for e in events],
        status=snapshot.status.value,
        payment_status=snapshot.payment_status.value,
        fulfillment_status=snapshot.fulfillment_status.value,
    )


@router.post(
    "/orders/{order_id}/shipments",
    response_model=OrderResponse,
    status_code=201,
    summary="Create Shipment",
    description="Ship some or all items of a paid order (store owner only)."
)
def create_shipment(
    order_id: UUID,
    request: CreateShipmentRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    order = unwrap(
        engine.create_shipment(
            actor,
            order_id,
            request.carrier,
            request.tracking_number,
            items=[(line.order_item_id, line.quantity) for line in request.items],
            method=request.method,
            tracking_url=request.tracking_url,
        )
    )
    return OrderResponse.from_order(order)


@router.post(
    "/orders/{order_id}/shipments/{shipment_id}/delivery",
    response_model=OrderResponse,
    summary="Confirm Delivery"
)
def confirm_delivery(
    order_id: UUID,
    shipment_id: UUID,
    request: Optional[ConfirmDeliveryRequest] = None,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """Mark a shipment delivered; the order is delivered once all its shipments are."""
    delivered_at = request.delivered_at if request is not None else None
    return OrderResponse.from_order(unwrap(engine.confirm_delivery(actor, order_id, shipment_id, delivered_at)))


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse, summary="Cancel Order")
def cancel_order(
    order_id: UUID,
    request: Optional[CancelOrderRequest] = None,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """Cancel an unpaid order and release its reservations. Paid orders are refunded instead."""
    reason = request.reason if request is not None else None
    return OrderResponse.from_order(unwrap(engine.cancel_order(actor, order_id, reason)))


@router.post("/orders/{order_id}/hold", response_model=OrderResponse, summary="Put Order On Hold")
def hold_order(
    order_id: UUID,
    request: Optional[HoldOrderRequest] = None,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    note = request.note if request is not None else None
    return OrderResponse.from_order(unwrap(engine.hold_order(actor, order_id, note)))


@router.post("/orders/{order_id}/resume", response_model=OrderResponse, summary="Resume Order")
def resume_order(
    order_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    return OrderResponse.from_order(unwrap(engine.resume_order(actor, order_id)))


@router.post("/orders/{order_id}/notes", response_model=OrderResponse, status_code=201, summary="Add Order Note")
def add_order_note(
    order_id: UUID,
    request: AddOrderNoteRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """
    Attach a note to an order.

    Customer notes are shown to the customer and the store owner. Internal
    notes can only be added and read by the store owner.
    """
    return OrderResponse.from_order(
        unwrap(engine.add_order_note(actor, order_id, request.content, request.note_type))
    )
