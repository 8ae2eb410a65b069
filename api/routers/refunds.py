"""
Refunds API Endpoints.

Endpoints for requesting, approving and rejecting refunds, and for
restocking returned goods.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from api.dependencies import get_actor, get_engine, unwrap
from api.models import InventoryResponse, OrderResponse, RefundRequest, RestockRequest
from domain.actor import ActorContext
from services.engine import FulfillmentEngine

router = APIRouter()


@router.post(
    "/orders/{order_id}/refunds",
    response_model=OrderResponse,
    status_code=201,
    summary="Request Refund",
    description="Customers create a pending request; store owners issue the refund directly."
)
def request_refund(
    order_id: UUID,
    request: RefundRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """
    Request or issue a refund.

    The amount may not exceed what is still refundable on the order (or on
    the item, for item-scoped refunds). Refunds never return goods to stock;
    use the returns endpoint for that.
    """
    order, _ = unwrap(
        engine.request_refund(
            actor,
            order_id,
            request.amount,
            request.reason,
            order_item_id=request.order_item_id,
            method=request.method,
            reason_category=request.reason_category,
        )
    )
    return OrderResponse.from_order(order)


@router.post("/refunds/{refund_id}/approve", response_model=OrderResponse, summary="Approve Refund")
def approve_refund(
    refund_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    order, _ = unwrap(engine.approve_refund(actor, refund_id))
    return OrderResponse.from_order(order)


@router.post("/refunds/{refund_id}/reject", response_model=OrderResponse, summary="Reject Refund")
def reject_refund(
    refund_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    order, _ = unwrap(engine.reject_refund(actor, refund_id))
    return OrderResponse.from_order(order)


@router.post("/orders/{order_id}/returns", response_model=InventoryResponse, summary="Restock Returned Items")
def restock_return(
    order_id: UUID,
    request: RestockRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    record = unwrap(engine.restock_return(actor, order_id, request.order_item_id, request.quantity))
    return InventoryResponse.from_record(record)
