"""
Shipping API Endpoints.

Endpoints for quoting shipping on a cart and selecting one of the quotes.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from api.dependencies import get_actor, get_engine, unwrap
from api.models import CartResponse, SelectShippingRequest, ShippingRatesRequest
from domain.actor import ActorContext
from services.engine import FulfillmentEngine

router = APIRouter()


@router.post(
    "/carts/{cart_id}/shipping-rates",
    response_model=CartResponse,
    summary="Quote Shipping",
    description="Quote shipping for the cart's parcels and store the quotes as its shipping options."
)
def get_shipping_rates(
    cart_id: UUID,
    request: ShippingRatesRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    """
    Quote shipping for the cart.

    Quotes are served from the rate cache when a fresh entry exists for the
    same route, weight and box; otherwise the rate provider is called (one
    retry on failure, 502 if it still fails). Digital-only carts get a single
    free "digital" option without any provider call.
    """
    cart = unwrap(engine.get_shipping_rates(actor, cart_id, request.destination.to_address()))
    return CartResponse.from_cart(cart)


@router.put("/carts/{cart_id}/shipping-option", response_model=CartResponse, summary="Select Shipping Option")
def select_shipping_option(
    cart_id: UUID,
    request: SelectShippingRequest,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    return CartResponse.from_cart(unwrap(engine.select_shipping_option(actor, cart_id, request.option_id)))
