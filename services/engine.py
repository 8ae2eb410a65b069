"""
Fulfillment engine facade.

One object exposing every public operation. Each call returns an
`OperationResult`: `ok=True` with the resulting data, or `ok=False` with a
typed error `{kind, message, details}`.

Invariant violations are the exception: they are logged at critical level
and re-raised, so a corrupted ledger halts the caller instead of being
returned as an ordinary failure. Raw store failures (RuntimeError) also
propagate unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, TypeVar
from uuid import UUID

from domain.actor import ActorContext
from domain.errors import FulfillmentError, InvariantViolationError
from domain.listing import Address
from domain.order import OrderNoteType, OrderStatus
from domain.refund import RefundMethod, RefundReasonCategory
from domain.time import Clock, utc_now
from repositories.store import DataStore, build_supabase_store
from services.cart_service import CartService
from services.gateways import (
    EdgeFunctionPaymentGateway,
    EdgeFunctionRateProvider,
    PaymentGateway,
    ShippingRateProvider,
)
from services.inventory_ledger import InventoryLedger
from services.order_service import OrderService, ShipmentRequest
from services.refund_service import RefundService
from services.settings import EngineSettings
from services.shipping_rates import ShippingRateResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class OperationError:
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class OperationResult:
    ok: bool
    data: Any = None
    error: Optional[OperationError] = None

    @staticmethod
    def success(data: Any) -> "OperationResult":
        return OperationResult(ok=True, data=data)

    @staticmethod
    def failure(exc: FulfillmentError) -> "OperationResult":
        return OperationResult(
            ok=False,
            error=OperationError(kind=exc.kind.value, message=exc.message, details=exc.details()),
        )


class FulfillmentEngine:
    def __init__(
        self,
        data: DataStore,
        payment_gateway: PaymentGateway,
        rate_provider: ShippingRateProvider,
        settings: Optional[EngineSettings] = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.data = data
        self.ledger = InventoryLedger(data, clock=clock)
        self.carts = CartService(data, self.ledger, self.settings, clock=clock)
        self.rates = ShippingRateResolver(data, rate_provider, self.settings, clock=clock)
        self.orders = OrderService(data, self.carts, payment_gateway, self.settings, clock=clock)
        self.refunds = RefundService(data, self.ledger, payment_gateway, clock=clock)

    def _run(self, operation: str, call: Callable[[], T]) -> OperationResult:
        try:
            return OperationResult.success(call())
        except InvariantViolationError as exc:
            logger.critical("Invariant violation during %s: %s", operation, exc.message)
            raise
        except FulfillmentError as exc:
            return OperationResult.failure(exc)

    # -- carts -------------------------------------------------------------

    def get_or_create_cart(self, actor: ActorContext) -> OperationResult:
        return self._run("get_or_create_cart", lambda: self.carts.get_or_create_active_cart(actor))

    def get_cart(self, actor: ActorContext, cart_id: UUID) -> OperationResult:
        return self._run("get_cart", lambda: self.carts.get_cart(actor, cart_id))

    def add_item(
        self,
        actor: ActorContext,
        cart_id: UUID,
        listing_id: UUID,
        quantity: int,
        *,
        is_gift: bool = False,
        selected_options: Optional[Mapping[str, str]] = None,
    ) -> OperationResult:
        return self._run(
            "add_item",
            lambda: self.carts.add_item(
                actor, cart_id, listing_id, quantity, is_gift=is_gift, selected_options=selected_options
            ),
        )

    def update_item_quantity(
        self, actor: ActorContext, cart_id: UUID, listing_id: UUID, quantity: int
    ) -> OperationResult:
        return self._run(
            "update_item_quantity", lambda: self.carts.update_item_quantity(actor, cart_id, listing_id, quantity)
        )

    def remove_item(self, actor: ActorContext, cart_id: UUID, listing_id: UUID) -> OperationResult:
        return self._run("remove_item", lambda: self.carts.remove_item(actor, cart_id, listing_id))

    def apply_coupon(self, actor: ActorContext, cart_id: UUID, code: str) -> OperationResult:
        return self._run("apply_coupon", lambda: self.carts.apply_coupon(actor, cart_id, code))

    def clear_cart(self, actor: ActorContext, cart_id: UUID) -> OperationResult:
        return self._run("clear_cart", lambda: self.carts.clear_cart(actor, cart_id))

    def remove_coupon(self, actor: ActorContext, cart_id: UUID, code: str) -> OperationResult:
        return self._run("remove_coupon", lambda: self.carts.remove_coupon(actor, cart_id, code))

    # -- shipping ----------------------------------------------------------

    def get_shipping_rates(self, actor: ActorContext, cart_id: UUID, destination: Address) -> OperationResult:
        """Quote the cart and store the quotes as its shipping options; data is the updated cart."""

        def _quote_and_store():
            cart = self.carts.get_cart(actor, cart_id)
            options = self.rates.quote_cart(cart, destination)
            return self.carts.replace_shipping_options(actor, cart_id, options)

        return self._run("get_shipping_rates", _quote_and_store)

    def select_shipping_option(self, actor: ActorContext, cart_id: UUID, option_id: UUID) -> OperationResult:
        return self._run("select_shipping_option", lambda: self.carts.select_shipping_option(actor, cart_id, option_id))

    # -- orders ------------------------------------------------------------

    def checkout(self, actor: ActorContext, cart_id: UUID) -> OperationResult:
        return self._run("checkout", lambda: self.orders.checkout(actor, cart_id))

    def create_payment_intent(self, actor: ActorContext, order_id: UUID) -> OperationResult:
        """data is `(order, PaymentIntent)`."""
        return self._run("create_payment_intent", lambda: self.orders.create_payment_intent(actor, order_id))

    def record_payment(self, intent_id: str) -> OperationResult:
        return self._run("record_payment", lambda: self.orders.record_payment(intent_id))

    def record_payment_failure(self, intent_id: str, message: str) -> OperationResult:
        return self._run("record_payment_failure", lambda: self.orders.record_payment_failure(intent_id, message))

    def create_shipment(
        self,
        actor: ActorContext,
        order_id: UUID,
        carrier: str,
        tracking_number: str,
        *,
        items: Sequence[Tuple[UUID, int]] = (),
        method: str = "standard",
        tracking_url: Optional[str] = None,
    ) -> OperationResult:
        request = ShipmentRequest(
            carrier=carrier,
            tracking_number=tracking_number,
            items=tuple(items),
            method=method,
            tracking_url=tracking_url,
        )
        return self._run("create_shipment", lambda: self.orders.create_shipment(actor, order_id, request))

    def confirm_delivery(
        self,
        actor: ActorContext,
        order_id: UUID,
        shipment_id: UUID,
        delivered_at: Optional[datetime] = None,
    ) -> OperationResult:
        return self._run(
            "confirm_delivery", lambda: self.orders.confirm_delivery(actor, order_id, shipment_id, delivered_at)
        )

    def cancel_order(self, actor: ActorContext, order_id: UUID, reason: Optional[str] = None) -> OperationResult:
        return self._run("cancel_order", lambda: self.orders.cancel_order(actor, order_id, reason))

    def hold_order(self, actor: ActorContext, order_id: UUID, note: Optional[str] = None) -> OperationResult:
        return self._run("hold_order", lambda: self.orders.hold_order(actor, order_id, note))

    def resume_order(self, actor: ActorContext, order_id: UUID) -> OperationResult:
        return self._run("resume_order", lambda: self.orders.resume_order(actor, order_id))

    def get_order(self, actor: ActorContext, order_id: UUID) -> OperationResult:
        return self._run("get_order", lambda: self.orders.get_order(actor, order_id))

    def get_order_history(self, actor: ActorContext, order_id: UUID) -> OperationResult:
        """data is `(events, rebuilt StatusSnapshot)`."""
        return self._run("get_order_history", lambda: self.orders.get_history(actor, order_id))

    def list_customer_orders(self, actor: ActorContext) -> OperationResult:
        return self._run("list_customer_orders", lambda: self.orders.list_customer_orders(actor))

    def list_store_orders(
        self, actor: ActorContext, store_id: UUID, status: Optional[OrderStatus] = None
    ) -> OperationResult:
        return self._run("list_store_orders", lambda: self.orders.list_store_orders(actor, store_id, status))

    def add_order_note(
        self,
        actor: ActorContext,
        order_id: UUID,
        content: str,
        note_type: OrderNoteType = OrderNoteType.CUSTOMER,
    ) -> OperationResult:
        return self._run(
            "add_order_note", lambda: self.orders.add_order_note(actor, order_id, content, note_type)
        )

    # -- refunds -----------------------------------------------------------

    def request_refund(
        self,
        actor: ActorContext,
        order_id: UUID,
        amount: Decimal,
        reason: str,
        *,
        order_item_id: Optional[UUID] = None,
        method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT,
        reason_category: Optional[RefundReasonCategory] = None,
    ) -> OperationResult:
        return self._run(
            "request_refund",
            lambda: self.refunds.request_refund(
                actor,
                order_id,
                amount,
                reason,
                order_item_id=order_item_id,
                method=method,
                reason_category=reason_category,
            ),
        )

    def approve_refund(self, actor: ActorContext, refund_id: UUID) -> OperationResult:
        return self._run("approve_refund", lambda: self.refunds.approve_refund(actor, refund_id))

    def reject_refund(self, actor: ActorContext, refund_id: UUID) -> OperationResult:
        return self._run("reject_refund", lambda: self.refunds.reject_refund(actor, refund_id))

    def restock_return(
        self, actor: ActorContext, order_id: UUID, order_item_id: UUID, quantity: int
    ) -> OperationResult:
        return self._run(
            "restock_return", lambda: self.refunds.restock_return(actor, order_id, order_item_id, quantity)
        )

    # -- inventory ---------------------------------------------------------

    def create_inventory(
        self,
        actor: ActorContext,
        listing_id: UUID,
        quantity_available: int,
        *,
        restock_threshold: Optional[int] = None,
        sku: Optional[str] = None,
    ) -> OperationResult:
        return self._run(
            "create_inventory",
            lambda: self.ledger.create_inventory(
                actor, listing_id, quantity_available, restock_threshold=restock_threshold, sku=sku
            ),
        )

    def adjust_inventory(
        self, actor: ActorContext, listing_id: UUID, new_available: int, *, notes: Optional[str] = None
    ) -> OperationResult:
        return self._run(
            "adjust_inventory", lambda: self.ledger.adjust_quantity(actor, listing_id, new_available, notes=notes)
        )

    def inventory_status(self, listing_id: UUID) -> OperationResult:
        return self._run("inventory_status", lambda: self.ledger.status(listing_id))

    def low_stock_inventory(self, actor: ActorContext, store_id: UUID) -> OperationResult:
        return self._run("low_stock_inventory", lambda: self.ledger.low_stock_inventory(actor, store_id))

    def reconcile_inventory(self, listing_id: Optional[UUID] = None) -> OperationResult:
        """Reconcile one listing, or every listing with inventory when none is given."""

        if listing_id is None:
            return self._run("reconcile_inventory", self.ledger.reconcile_all)
        return self._run("reconcile_inventory", lambda: self.ledger.reconcile(listing_id))

    def release_expired_reservations(self) -> OperationResult:
        return self._run("release_expired_reservations", self.orders.release_expired_reservations)


def build_engine(settings: Optional[EngineSettings] = None) -> FulfillmentEngine:
    """Engine backed by Supabase tables and edge functions."""

    settings = settings or EngineSettings.from_env()
    from repositories.client import get_supabase

    client = get_supabase(settings.external_timeout_seconds)
    return FulfillmentEngine(
        build_supabase_store(client, timeout_seconds=settings.external_timeout_seconds),
        EdgeFunctionPaymentGateway(client),
        EdgeFunctionRateProvider(client),
        settings,
    )
