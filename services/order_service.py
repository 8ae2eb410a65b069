"""
Order service.

Handles:
- Checkout: the single, atomic hand-off from Cart to Order
- Payment intent creation and the gateway callbacks (success / failure)
- Shipments, delivery confirmation, and manual hold / resume / cancel
- Order notes and the customer / store order listings
- The expiry sweep for abandoned guest carts and unpaid orders

State rules live in `domain.order`; this service loads, authorises, calls
the gateway, and persists each transition together with its OrderEvent.

Inventory across the order lifecycle:
- checkout:          cart holds move to the order (still reserved)
- payment received:  every held unit is consumed (available and reserved drop)
- cancel / failure:  the order's holds are released
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from domain.actor import ActorContext
from domain.coupon import CouponRedemption
from domain.errors import InvariantViolationError, NotFoundError, ValidationError
from domain.listing import Store
from domain.order import (
    Order,
    OrderEvent,
    OrderNote,
    OrderNoteType,
    OrderShipment,
    OrderStatus,
    PaymentStatus,
    ShipmentItem,
    ShipmentStatus,
    StatusSnapshot,
    order_from_cart,
    replay,
    verify_against_history,
)
from domain.time import Clock, require_utc_timestamp, utc_now
from repositories.store import DataStore
from services.access import is_store_owner, load_cart, load_order, owns_order, require_store_owner
from services.cart_service import CartService
from services.gateways import PaymentGateway, PaymentIntent
from services.settings import EngineSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ShipmentRequest:
    """
    Request to ship (part of) an order.

    items: (order_item_id, quantity) pairs; empty ships everything not yet shipped
    """
    carrier: str
    tracking_number: str
    items: Sequence[Tuple[UUID, int]] = ()
    method: str = "standard"
    tracking_url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SweepReport:
    expired_cart_ids: List[UUID] = field(default_factory=list)
    cancelled_order_ids: List[UUID] = field(default_factory=list)


class OrderService:
    def __init__(
        self,
        data: DataStore,
        carts: CartService,
        gateway: PaymentGateway,
        settings: EngineSettings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._data = data
        self._carts = carts
        self._gateway = gateway
        self._settings = settings
        self._clock = clock

    # -- reads -------------------------------------------------------------

    def get_order(self, actor: ActorContext, order_id: UUID) -> Order:
        order, store = load_order(self._data, actor, order_id)
        return self._as_seen_by(actor, order, store)

    def _as_seen_by(self, actor: ActorContext, order: Order, store: Optional[Store]) -> Order:
        """Customers see only notes addressed to them."""

        if is_store_owner(actor, store):
            return order
        return replace(order, notes=order.notes_visible_to_customer())

    def list_customer_orders(self, actor: ActorContext) -> List[Order]:
        actor.require_identity()
        orders = self._data.orders.list_for_customer(account_id=actor.account_id, device_id=actor.device_id)
        return [replace(o, notes=o.notes_visible_to_customer()) for o in orders]

    def list_store_orders(
        self, actor: ActorContext, store_id: UUID, status: Optional[OrderStatus] = None
    ) -> List[Order]:
        store = self._data.listings.get_store(store_id)
        if store is None:
            raise NotFoundError("Store", store_id)
        require_store_owner(actor, store, "view store orders")
        return self._data.orders.list_for_store(store_id, status)

    def get_history(self, actor: ActorContext, order_id: UUID) -> Tuple[List[OrderEvent], StatusSnapshot]:
        """Event log of an order and the status rebuilt from it, checked against the stored order."""

        order, _ = load_order(self._data, actor, order_id)
        events = self._data.orders.list_events(order_id)
        verify_against_history(order, events)
        return events, replay(events)

    # -- checkout ----------------------------------------------------------

    def checkout(self, actor: ActorContext, cart_id: UUID) -> Order:
        """
        Convert the cart into a pending, unpaid order.

        Either everything persists (order, items, holds moved to the order,
        cart converted, coupon redemptions, order_created event) or nothing does.
        """

        with self._data.transaction():
            cart = load_cart(self._data, actor, cart_id)
            cart.require_active()
            now = self._clock()
            if cart.is_expired(now):
                raise ValidationError("Cart has expired")
            if cart.is_empty:
                raise ValidationError("Your cart is empty")

            for item in cart.items:
                listing = self._data.listings.get_listing(item.listing_id)
                if listing is None or not listing.is_purchasable():
                    raise ValidationError(f"{item.title} is no longer available")
                held = self._data.inventory.get_hold(item.listing_id, cart.cart_id)
                if held != item.quantity:
                    logger.critical(
                        "Cart %s holds %s of listing %s but contains %s",
                        cart.cart_id,
                        held,
                        item.listing_id,
                        item.quantity,
                    )
                    raise InvariantViolationError(
                        f"Reservation for listing {item.listing_id} ({held}) "
                        f"does not match cart quantity {item.quantity}"
                    )

            final_cart = self._carts.recalculate(cart)
            order, event = order_from_cart(final_cart, at=now, actor_id=actor.actor_id)
            customer_key = actor.customer_key()
            redemptions = [
                CouponRedemption(
                    coupon_id=applied.coupon_id, customer_key=customer_key, order_id=order.order_id, redeemed_at=now
                )
                for applied in final_cart.coupons
                if applied.applied_discount > 0
            ]
            self._data.orders.create_from_cart(order, event, final_cart, redemptions)

        logger.info(
            "Checkout of cart %s created order %s for %s %s",
            cart.cart_id,
            order.order_id,
            order.total_price,
            order.currency,
        )
        return order

    # -- payment -----------------------------------------------------------

    def create_payment_intent(self, actor: ActorContext, order_id: UUID) -> Tuple[Order, PaymentIntent]:
        """Ask the gateway for a payment intent. Money-moving: never retried."""

        order, _ = load_order(self._data, actor, order_id)
        if not (actor.is_system or owns_order(actor, order)):
            raise NotFoundError("Order", order_id)
        if order.payment_status not in (PaymentStatus.UNPAID, PaymentStatus.PENDING):
            raise ValidationError(f"Order payment is already {order.payment_status.value}")

        intent = self._gateway.create_payment_intent(
            amount=order.total_price,
            currency=order.currency,
            order_id=order.order_id,
            customer_key=actor.customer_key() if not actor.is_system else f"order:{order.order_id}",
        )
        with self._data.transaction():
            # Re-read: the order may have changed while the gateway was called.
            current = self._data.orders.get(order_id) or order
            updated, event = current.with_payment_intent(intent.intent_id, at=self._clock())
            self._data.orders.save(updated, [event])
        logger.info("Created payment intent %s for order %s", intent.intent_id, order.order_id)
        return updated, intent

    def _find_by_intent(self, intent_id: str) -> Order:
        if not intent_id:
            raise ValidationError("Payment intent id is required")
        order = self._data.orders.find_by_payment_intent(intent_id)
        if order is None:
            raise NotFoundError("Order", intent_id)
        return order

    def record_payment(self, intent_id: str) -> Order:
        """
        Gateway callback: payment succeeded.

        Any intent created for the order can settle it, including one
        superseded by a later intent. Idempotent: a repeated callback for a
        paid order changes nothing.
        """

        with self._data.transaction():
            order = self._find_by_intent(intent_id)
            if order.is_paid:
                if intent_id != order.payment_intent_id:
                    logger.error(
                        "Order %s was already paid through %s; intent %s also succeeded and must be refunded",
                        order.order_id,
                        order.payment_intent_id,
                        intent_id,
                    )
                else:
                    logger.info("Payment for order %s already recorded", order.order_id)
                return order

            updated, event = order.paid(intent_id=intent_id, at=self._clock())
            self._data.orders.settle_payment(updated, event)
        logger.info("Payment received for order %s; status %s", order.order_id, updated.status.value)
        return updated

    def record_payment_failure(self, intent_id: str, message: str) -> Order:
        """
        Gateway callback: payment failed.

        Only the order's current intent can fail the order; a failure reported
        for a superseded intent leaves the order unchanged.
        """

        with self._data.transaction():
            order = self._find_by_intent(intent_id)
            if intent_id != order.payment_intent_id:
                logger.warning(
                    "Ignoring failure of intent %s; order %s now pays through %s",
                    intent_id,
                    order.order_id,
                    order.payment_intent_id,
                )
                return order
            updated, event = order.payment_failed(
                intent_id=intent_id, message=message or "Payment failed", at=self._clock()
            )
            self._data.orders.cancel(updated, event)
        logger.warning("Payment failed for order %s: %s", order.order_id, message)
        return updated

    # -- notes -------------------------------------------------------------

    def add_order_note(
        self,
        actor: ActorContext,
        order_id: UUID,
        content: str,
        note_type: OrderNoteType = OrderNoteType.CUSTOMER,
    ) -> Order:
        """
        Attach a note to an order.

        Customer notes may come from the customer or the store owner and are
        shown to both; internal notes are store-owner only.
        """

        if not content or not content.strip():
            raise ValidationError("Note content is required")
        with self._data.transaction():
            order, store = load_order(self._data, actor, order_id)
            if note_type == OrderNoteType.INTERNAL:
                require_store_owner(actor, store, "add internal notes")
            now = self._clock()
            note = OrderNote(
                note_id=uuid4(),
                note_type=note_type,
                content=content.strip(),
                created_at=now,
                author_id=actor.actor_id,
            )
            updated, event = order.with_note(note, at=now)
            self._data.orders.save(updated, [event])
        logger.info("Added %s note to order %s", note_type.value, order_id)
        return self._as_seen_by(actor, updated, store)

    # -- fulfillment -------------------------------------------------------

    def create_shipment(self, actor: ActorContext, order_id: UUID, request: ShipmentRequest) -> Order:
        order, store = load_order(self._data, actor, order_id)
        require_store_owner(actor, store, "create shipments")
        if not request.carrier.strip() or not request.tracking_number.strip():
            raise ValidationError("Carrier and tracking number are required")

        if request.items:
            lines = tuple(ShipmentItem(order_item_id=item_id, quantity=qty) for item_id, qty in request.items)
        else:
            shipped = order.shipped_quantities()
            lines = tuple(
                ShipmentItem(order_item_id=item.order_item_id, quantity=item.quantity - shipped.get(item.order_item_id, 0))
                for item in order.items
                if item.quantity > shipped.get(item.order_item_id, 0)
            )

        now = self._clock()
        shipment = OrderShipment(
            shipment_id=uuid4(),
            carrier=request.carrier.strip(),
            tracking_number=request.tracking_number.strip(),
            status=ShipmentStatus.IN_TRANSIT,
            created_at=now,
            items=lines,
            method=request.method,
            tracking_url=request.tracking_url,
        )
        updated, event = order.with_shipment(shipment, at=now, actor_id=actor.actor_id)
        self._data.orders.save(updated, [event])
        logger.info(
            "Shipment %s created for order %s (%s)", shipment.shipment_id, order_id, updated.fulfillment_status.value
        )
        return updated

    def confirm_delivery(
        self,
        actor: ActorContext,
        order_id: UUID,
        shipment_id: UUID,
        delivered_at: Optional[datetime] = None,
    ) -> Order:
        order, store = load_order(self._data, actor, order_id)
        require_store_owner(actor, store, "confirm deliveries")
        at = delivered_at or self._clock()
        require_utc_timestamp("delivered_at", at)
        updated, event = order.with_delivery(shipment_id, at=at, actor_id=actor.actor_id)
        self._data.orders.save(updated, [event])
        logger.info("Shipment %s of order %s delivered; order %s", shipment_id, order_id, updated.status.value)
        return updated

    # -- manual transitions -----------------------------------------------

    def cancel_order(self, actor: ActorContext, order_id: UUID, reason: Optional[str] = None) -> Order:
        """Cancel an unpaid order and release its reservations."""

        with self._data.transaction():
            order, _ = load_order(self._data, actor, order_id)
            updated, event = order.cancelled(
                reason=reason or "Cancelled by request", at=self._clock(), actor_id=actor.actor_id
            )
            self._data.orders.cancel(updated, event)
        logger.info("Order %s cancelled", order_id)
        return updated

    def hold_order(self, actor: ActorContext, order_id: UUID, note: Optional[str] = None) -> Order:
        order, store = load_order(self._data, actor, order_id)
        require_store_owner(actor, store, "put orders on hold")
        updated, event = order.on_hold(note=note, at=self._clock(), actor_id=actor.actor_id)
        self._data.orders.save(updated, [event])
        logger.info("Order %s put on hold", order_id)
        return updated

    def resume_order(self, actor: ActorContext, order_id: UUID) -> Order:
        order, store = load_order(self._data, actor, order_id)
        require_store_owner(actor, store, "resume orders")
        updated, event = order.resumed(at=self._clock(), actor_id=actor.actor_id)
        self._data.orders.save(updated, [event])
        logger.info("Order %s resumed as %s", order_id, updated.status.value)
        return updated

    # -- sweep -------------------------------------------------------------

    def release_expired_reservations(self) -> SweepReport:
        """
        Release holds nobody will complete: guest carts past `expires_at`, and
        unpaid orders older than the checkout session TTL.
        """

        now = self._clock()
        report = SweepReport()
        for cart in self._data.carts.list_expired(now):
            self._carts.expire(cart)
            report.expired_cart_ids.append(cart.cart_id)

        cutoff = now - self._settings.checkout_session_ttl
        system = ActorContext.system()
        for order in self._data.orders.list_unpaid_created_before(cutoff):
            self.cancel_order(system, order.order_id, reason="Checkout session expired")
            report.cancelled_order_ids.append(order.order_id)

        if report.expired_cart_ids or report.cancelled_order_ids:
            logger.info(
                "Sweep expired %s carts and cancelled %s unpaid orders",
                len(report.expired_cart_ids),
                len(report.cancelled_order_ids),
            )
        return report


__all__ = ["OrderService", "ShipmentRequest", "SweepReport"]
