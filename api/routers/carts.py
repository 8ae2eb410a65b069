"""
Carts API Endpoints.

Endpoints for the caller's active cart: items, quantities and coupons.
Every change to a line is mirrored into an inventory reservation.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from api.dependencies import get_actor, get_engine, unwrap
from api.models import AddItemRequest, CartResponse, CouponRequest, UpdateQuantityRequest
from domain.actor import ActorContext
from services.engine import FulfillmentEngine

router = APIRouter()


@router.post(
    "/carts",
    response_model=CartResponse,
    summary="Get or Create Active Cart",
    description="Return the caller's active cart, creating one when none exists."
)
def get_or_create_cart(
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """
    Return the active cart for the account (X-Account-Id) or guest device
    (X-Device-Id). Guest carts expire after the configured TTL; an expired
    guest cart is released and replaced by a fresh one.
    """
    return CartResponse.from_cart(unwrap(engine.get_or_create_cart(actor)))


@router.get("/carts/{cart_id}", response_model=CartResponse, summary="Get Cart")
def get_cart(
    cart_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    return CartResponse.from_cart(unwrap(engine.get_cart(actor, cart_id)))


@router.post(
    "/carts/{cart_id}/items",
    response_model=CartResponse,
    summary="Add Item",
    description="Add units of a listing to the cart and reserve them."
)
def add_item(
    cart_id: UUID,
    request: AddItemRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """
    Add a listing to the cart.

    **Errors:**
    - 409 when the requested units are not available (`details.available`
      carries what is left)
    - 400 when the listing is not purchasable or belongs to another store
    """
    cart = unwrap(
        engine.add_item(
            actor,
            cart_id,
            request.listing_id,
            request.quantity,
            is_gift=request.is_gift,
            selected_options=request.selected_options,
        )
    )
    return CartResponse.from_cart(cart)


@router.patch("/carts/{cart_id}/items/{listing_id}", response_model=CartResponse, summary="Update Quantity")
def update_item_quantity(
    cart_id: UUID,
    listing_id: UUID,
    request: UpdateQuantityRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """Set a line's quantity; only the difference is reserved or released. 0 removes the line."""
    return CartResponse.from_cart(
        unwrap(engine.update_item_quantity(actor, cart_id, listing_id, request.quantity))
    )


@router.delete("/carts/{cart_id}/items/{listing_id}", response_model=CartResponse, summary="Remove Item")
def remove_item(
    cart_id: UUID,
    listing_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    return CartResponse.from_cart(unwrap(engine.remove_item(actor, cart_id, listing_id)))


@router.post("/carts/{cart_id}/coupons", response_model=CartResponse, summary="Apply Coupon")
def apply_coupon(
    cart_id: UUID,
    request: CouponRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    return CartResponse.from_cart(unwrap(engine.apply_coupon(actor, cart_id, request.code)))


@router.delete("/carts/{cart_id}/coupons/{code}", response_model=CartResponse, summary="Remove Coupon")
def remove_coupon(
    cart_id: UUID,
    code: str,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    return CartResponse.from_cart(unwrap(engine.remove_coupon(actor, cart_id, code)))


@router.delete("/carts/{cart_id}/items", response_model=CartResponse, summary="Clear Cart")
def clear_cart(
    cart_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """Remove every line and coupon; all of the cart's reservations are released."""
    return CartResponse.from_cart(unwrap(engine.clear_cart(actor, cart_id)))
