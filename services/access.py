"""
Ownership checks shared by the services.

Carts and orders the caller does not own are reported as not found, exactly
like missing ones. Store-owner actions on an order the caller can see, but
does not own the store of, are rejected as validation errors.
"""

from __future__ import annotations

from typing import Optional, Tuple
from uuid import UUID

from domain.actor import ActorContext
from domain.cart import Cart
from domain.errors import NotFoundError, ValidationError
from domain.listing import Listing, Store
from domain.order import Order
from repositories.store import DataStore


def owns_cart(actor: ActorContext, cart: Cart) -> bool:
    if actor.is_system:
        return True
    if cart.account_id is not None:
        return actor.account_id == cart.account_id
    return bool(actor.device_id) and actor.device_id == cart.device_id


def owns_order(actor: ActorContext, order: Order) -> bool:
    if order.account_id is not None:
        return actor.account_id == order.account_id
    return bool(actor.device_id) and actor.device_id == order.device_id


def is_store_owner(actor: ActorContext, store: Optional[Store]) -> bool:
    return actor.is_system or (store is not None and actor.owns(store.owner_id))


def load_cart(data: DataStore, actor: ActorContext, cart_id: UUID) -> Cart:
    cart = data.carts.get(cart_id)
    if cart is None or not owns_cart(actor, cart):
        raise NotFoundError("Cart", cart_id)
    return cart


def load_order(data: DataStore, actor: ActorContext, order_id: UUID) -> Tuple[Order, Optional[Store]]:
    """Return the order and its store when the caller is the customer, the store owner, or the system."""

    order = data.orders.get(order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    store = data.listings.get_store(order.store_id)
    if not (actor.is_system or owns_order(actor, order) or is_store_owner(actor, store)):
        raise NotFoundError("Order", order_id)
    return order, store


def require_store_owner(actor: ActorContext, store: Optional[Store], action: str) -> None:
    if not is_store_owner(actor, store):
        raise ValidationError(f"Only the store owner can {action}")


def load_owned_listing(data: DataStore, actor: ActorContext, listing_id: UUID) -> Listing:
    """Listing whose store is owned by the caller; anything else is not found."""

    listing = data.listings.get_listing(listing_id)
    if listing is None:
        raise NotFoundError("Listing", listing_id)
    if not is_store_owner(actor, data.listings.get_store(listing.store_id)):
        raise NotFoundError("Listing", listing_id)
    return listing
