"""
Inventory API Endpoints.

Endpoints for store owners to create and adjust stock, and to check a
listing's stock against its transaction log. The low-stock report lists a
store's records that need restocking.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends

from api.dependencies import get_actor, get_engine, unwrap
from api.models import AdjustInventoryRequest, CreateInventoryRequest, InventoryResponse
from domain.actor import ActorContext
from services.engine import FulfillmentEngine

router = APIRouter()


@router.post("/inventory", response_model=InventoryResponse, status_code=201, summary="Create Inventory")
def create_inventory(
    request: CreateInventoryRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    record = unwrap(
        engine.create_inventory(
            actor,
            request.listing_id,
            request.quantity_available,
            restock_threshold=request.restock_threshold,
            sku=request.sku,
        )
    )
    return InventoryResponse.from_record(record)


@router.get(
    "/inventory/{listing_id}",
    response_model=InventoryResponse,
    summary="Inventory Status",
    description="Stock levels and stock status (in_stock, low_stock, out_of_stock) for a listing."
)
def inventory_status(listing_id: UUID, engine: FulfillmentEngine = Depends(get_engine)):
    return InventoryResponse.from_record(unwrap(engine.inventory_status(listing_id)))


@router.put("/inventory/{listing_id}", response_model=InventoryResponse, summary="Adjust Inventory")
def adjust_inventory(
    listing_id: UUID,
    request: AdjustInventoryRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """
    Set `quantity_available` to an absolute value (store owner only).

    Increases are recorded as restocks, decreases as adjustments. The value
    may not drop below what is currently reserved.
    """
    record = unwrap(engine.adjust_inventory(actor, listing_id, request.quantity_available, notes=request.notes))
    return InventoryResponse.from_record(record)


@router.get(
    "/stores/{store_id}/inventory/low-stock",
    response_model=List[InventoryResponse],
    summary="Low Stock Inventory",
    description="Records at or below their restock threshold, or sold out, emptiest first (store owner only)."
)
def low_stock_inventory(
    store_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    return [InventoryResponse.from_record(r) for r in unwrap(engine.low_stock_inventory(actor, store_id))]
