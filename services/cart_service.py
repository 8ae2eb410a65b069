"""
Cart service.

Handles:
- One active cart per account or per guest device
- Item changes mirrored 1:1 into inventory reservations (delta only)
- Coupon application through the coupon evaluator
- Shipping option selection
- Total recomputation and a CartEvent for every mutation

Every mutation follows the same order: validate, change the reservation,
recompute totals, persist cart and event together. When persisting fails after
the reservation changed, the reservation change is reversed before the error
propagates, so the caller sees either the whole change or none of it.

Each mutation runs inside `DataStore.transaction()` and saves against the cart
version it read, so two requests changing the same cart cannot both win: the
later save is refused and its reservation change is reversed.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from domain.actor import ActorContext
from domain.cart import Cart, CartEvent, CartEventType, CartShippingOption, CartStatus, cart_event, new_cart
from domain.coupon import evaluate, normalize_code
from domain.errors import FulfillmentError, NotFoundError, ValidationError
from domain.listing import Listing
from domain.time import Clock, utc_now
from repositories.store import DataStore
from services.access import load_cart
from services.inventory_ledger import InventoryLedger
from services.settings import EngineSettings

logger = logging.getLogger(__name__)


class CartService:
    def __init__(
        self,
        data: DataStore,
        ledger: InventoryLedger,
        settings: EngineSettings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._data = data
        self._ledger = ledger
        self._settings = settings
        self._clock = clock

    # -- reads -------------------------------------------------------------

    def get_or_create_active_cart(self, actor: ActorContext) -> Cart:
        actor.require_identity()
        with self._data.transaction():
            existing = self._data.carts.find_active(account_id=actor.account_id, device_id=actor.device_id)
            now = self._clock()
            if existing is not None:
                if not existing.is_expired(now):
                    return existing
                self.expire(existing)

            expires_at = None if actor.account_id is not None else now + self._settings.guest_cart_ttl
            cart = new_cart(
                currency=self._settings.currency,
                at=now,
                account_id=actor.account_id,
                device_id=None if actor.account_id is not None else actor.device_id,
                expires_at=expires_at,
            )
            cart = self._data.carts.save(cart, [])
        logger.info("Created cart %s for %s", cart.cart_id, actor.customer_key())
        return cart

    def get_cart(self, actor: ActorContext, cart_id: UUID) -> Cart:
        return load_cart(self._data, actor, cart_id)

    def _load_mutable(self, actor: ActorContext, cart_id: UUID) -> Cart:
        cart = load_cart(self._data, actor, cart_id)
        cart.require_active()
        if cart.is_expired(self._clock()):
            raise ValidationError("Cart has expired")
        return cart

    def _load_listing(self, listing_id: UUID) -> Listing:
        listing = self._data.listings.get_listing(listing_id)
        if listing is None:
            raise NotFoundError("Listing", listing_id)
        if not listing.is_purchasable():
            raise ValidationError("This item is no longer available")
        return listing

    # -- item mutations ----------------------------------------------------

    def add_item(
        self,
        actor: ActorContext,
        cart_id: UUID,
        listing_id: UUID,
        quantity: int,
        *,
        is_gift: bool = False,
        selected_options: Optional[Mapping[str, str]] = None,
    ) -> Cart:
        with self._data.transaction():
            cart = self._load_mutable(actor, cart_id)
            listing = self._load_listing(listing_id)
            if any(item.store_id != listing.store_id for item in cart.items):
                raise ValidationError("Items from different stores must be ordered separately")

            now = self._clock()
            updated = cart.with_item(listing, quantity, at=now, is_gift=is_gift, selected_options=selected_options)
            new_quantity = updated.item_quantity(listing_id)
            self._ledger.reserve(listing_id, quantity, cart_id=cart.cart_id)
            event = cart_event(
                updated,
                CartEventType.ADD_ITEM,
                {"listing_id": str(listing_id), "quantity": quantity, "new_quantity": new_quantity},
                at=now,
                actor_id=actor.actor_id,
            )
            return self._persist(
                updated,
                event,
                compensate=lambda: self._ledger.release(listing_id, quantity, holder_id=cart.cart_id),
            )

    def update_item_quantity(self, actor: ActorContext, cart_id: UUID, listing_id: UUID, quantity: int) -> Cart:
        """Set a line to `quantity`; 0 removes the line."""

        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError("Quantity must be a non-negative integer")
        if quantity == 0:
            return self.remove_item(actor, cart_id, listing_id)

        with self._data.transaction():
            cart = self._load_mutable(actor, cart_id)
            current = cart.find_item(listing_id)
            if current is None:
                raise NotFoundError("Cart item", listing_id)
            delta = quantity - current.quantity
            if delta == 0:
                return cart
            if delta > 0:
                self._load_listing(listing_id)

            now = self._clock()
            updated = cart.with_item_quantity(listing_id, quantity, at=now)
            compensate: Callable[[], object]
            if delta > 0:
                self._ledger.reserve(listing_id, delta, cart_id=cart.cart_id)
                compensate = lambda: self._ledger.release(listing_id, delta, holder_id=cart.cart_id)
            else:
                self._ledger.release(listing_id, -delta, holder_id=cart.cart_id)
                compensate = lambda: self._ledger.reserve(listing_id, -delta, cart_id=cart.cart_id)
            event = cart_event(
                updated,
                CartEventType.UPDATE_QUANTITY,
                {"listing_id": str(listing_id), "old_quantity": current.quantity, "new_quantity": quantity},
                at=now,
                actor_id=actor.actor_id,
            )
            return self._persist(updated, event, compensate=compensate)

    def remove_item(self, actor: ActorContext, cart_id: UUID, listing_id: UUID) -> Cart:
        with self._data.transaction():
            cart = self._load_mutable(actor, cart_id)
            current = cart.find_item(listing_id)
            if current is None:
                raise NotFoundError("Cart item", listing_id)

            now = self._clock()
            updated = cart.without_item(listing_id, at=now)
            self._ledger.release(listing_id, current.quantity, holder_id=cart.cart_id)
            event = cart_event(
                updated,
                CartEventType.REMOVE_ITEM,
                {"listing_id": str(listing_id), "quantity": current.quantity},
                at=now,
                actor_id=actor.actor_id,
            )
            return self._persist(
                updated,
                event,
                compensate=lambda: self._ledger.reserve(listing_id, current.quantity, cart_id=cart.cart_id),
            )

    def clear_cart(self, actor: ActorContext, cart_id: UUID) -> Cart:
        """Empty the cart: every line's reservation is released and coupons are detached."""

        with self._data.transaction():
            cart = self._load_mutable(actor, cart_id)
            now = self._clock()
            updated = cart.cleared(at=now)
            released: List[Tuple[UUID, int]] = []

            def restore() -> None:
                for listing_id, amount in released:
                    self._ledger.reserve(listing_id, amount, cart_id=cart.cart_id)

            try:
                for item in cart.items:
                    amount = self._ledger.release(item.listing_id, item.quantity, holder_id=cart.cart_id)
                    if amount:
                        released.append((item.listing_id, amount))
            except (FulfillmentError, RuntimeError):
                self._reverse(cart, restore)
                raise

            event = cart_event(
                updated,
                CartEventType.CLEAR_CART,
                {
                    "items": [{"listing_id": str(i.listing_id), "quantity": i.quantity} for i in cart.items],
                    "coupons": [c.code for c in cart.coupons],
                },
                at=now,
                actor_id=actor.actor_id,
            )
            return self._persist(updated, event, compensate=restore)

    # -- coupons -----------------------------------------------------------

    def apply_coupon(self, actor: ActorContext, cart_id: UUID, code: str) -> Cart:
        if not code or not code.strip():
            raise ValidationError("Coupon code is required")
        with self._data.transaction():
            cart = self._load_mutable(actor, cart_id)
            coupon = self._data.coupons.get_by_code(normalize_code(code))
            if coupon is None:
                raise NotFoundError("Coupon", normalize_code(code))

            now = self._clock()
            prior_uses = self._data.coupons.count_redemptions(coupon.coupon_id, actor.customer_key())
            applied = self._data.coupons.get_many(c.coupon_id for c in cart.coupons)
            evaluation = evaluate(coupon, cart, prior_uses=prior_uses, now=now, coupons_by_id=applied)
            if not evaluation.applicable:
                logger.warning("Coupon %s rejected for cart %s: %s", coupon.code, cart.cart_id, evaluation.reason)
                raise ValidationError(evaluation.reason or "Coupon cannot be applied")

            updated = cart.with_coupon(coupon, at=now)
            event = cart_event(
                updated,
                CartEventType.APPLY_COUPON,
                {"code": coupon.code, "discount_type": coupon.discount_type.value},
                at=now,
                actor_id=actor.actor_id,
            )
            return self._persist(updated, event)

    def remove_coupon(self, actor: ActorContext, cart_id: UUID, code: str) -> Cart:
        with self._data.transaction():
            cart = self._load_mutable(actor, cart_id)
            now = self._clock()
            updated = cart.without_coupon(normalize_code(code), at=now)
            event = cart_event(
                updated, CartEventType.REMOVE_COUPON, {"code": normalize_code(code)}, at=now, actor_id=actor.actor_id
            )
            return self._persist(updated, event)

    # -- shipping ----------------------------------------------------------

    def replace_shipping_options(
        self, actor: ActorContext, cart_id: UUID, options: Sequence[CartShippingOption]
    ) -> Cart:
        """Store freshly quoted options; the previous selection is dropped."""

        with self._data.transaction():
            cart = self._load_mutable(actor, cart_id)
            updated = self.recalculate(cart.with_shipping_options(tuple(options), at=self._clock()))
            return self._data.carts.save(updated, [])

    def select_shipping_option(self, actor: ActorContext, cart_id: UUID, option_id: UUID) -> Cart:
        with self._data.transaction():
            cart = self._load_mutable(actor, cart_id)
            now = self._clock()
            updated = cart.with_selected_shipping(option_id, at=now)
            selected = updated.selected_shipping
            event = cart_event(
                updated,
                CartEventType.SELECT_SHIPPING,
                {
                    "option_id": str(option_id),
                    "carrier": selected.carrier if selected else None,
                    "service": selected.service if selected else None,
                },
                at=now,
                actor_id=actor.actor_id,
            )
            return self._persist(updated, event)

    # -- lifecycle ---------------------------------------------------------

    def expire(self, cart: Cart) -> Cart:
        """Release every hold of an abandoned cart and mark it expired."""

        with self._data.transaction():
            now = self._clock()
            self._ledger.release_all(cart.cart_id)
            expired = cart.with_status(CartStatus.EXPIRED, at=now)
            event = cart_event(expired, CartEventType.EXPIRE, {"items": len(cart.items)}, at=now)
            expired = self._data.carts.save(expired, [event])
        logger.info("Expired cart %s", cart.cart_id)
        return expired

    def recalculate(self, cart: Cart) -> Cart:
        coupons = self._data.coupons.get_many(c.coupon_id for c in cart.coupons)
        updated = cart.recalculated(coupons, tax_rate=self._settings.tax_rate, now=self._clock())
        updated.verify_totals()
        return updated

    def _persist(
        self,
        cart: Cart,
        event: CartEvent,
        *,
        compensate: Optional[Callable[[], object]] = None,
    ) -> Cart:
        try:
            stored = self._data.carts.save(self.recalculate(cart), [event])
        except Exception:
            if compensate is not None:
                self._reverse(cart, compensate)
            raise
        logger.info("Cart %s: %s", cart.cart_id, event.event_type.value)
        return stored

    def _reverse(self, cart: Cart, compensate: Callable[[], object]) -> None:
        """Undo a reservation change; a failure here is logged so the original error still propagates."""

        logger.warning("Changing cart %s failed; reversing its reservation change", cart.cart_id)
        try:
            compensate()
        except (FulfillmentError, RuntimeError):
            logger.exception(
                "Could not reverse the reservation change of cart %s; run the inventory reconciliation",
                cart.cart_id,
            )
