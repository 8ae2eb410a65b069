"""
Domain: Order aggregate and its state machine.

An order has three independent status axes, each with its own transition table:

- status:             pending → processing → shipped → delivered
                      side exits to cancelled / refunded / partially_refunded
                      from any pre-delivered state; on_hold pauses pending or
                      processing orders
- payment_status:     unpaid → pending → paid → refunded | failed
- fulfillment_status: unfulfilled → partially_fulfilled → fulfilled, or cancelled

Transitions are driven by events (payment received, shipment created, delivery
confirmed, refund processed, ...). Each transition returns the new Order and
exactly one OrderEvent whose payload records the three axes after the change,
so the event log alone reproduces the current status (`replay`).

OrderItem prices and quantities are copied from the cart at checkout and never
change afterwards.

Every payment intent created for an order stays in `payment_intent_ids`;
`payment_intent_id` is the newest one until a payment settles, then the intent
that actually paid.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from .cart import Cart
from .errors import InvariantViolationError, NotFoundError, ValidationError
from .money import ZERO, to_money
from .refund import OrderRefund
from .time import require_utc_timestamp


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on_hold"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "unfulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class ShipmentStatus(str, Enum):
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


class OrderNoteType(str, Enum):
    INTERNAL = "internal"
    CUSTOMER = "customer"


class OrderEventType(str, Enum):
    ORDER_CREATED = "order_created"
    PAYMENT_INTENT_CREATED = "payment_intent_created"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    SHIPMENT_CREATED = "shipment_created"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    STATUS_CHANGE = "status_change"
    ORDER_CANCELLED = "order_cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUND_PROCESSED = "refund_processed"
    REFUND_REJECTED = "refund_rejected"
    NOTE_ADDED = "note_added"


_REFUND_EXITS = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED})

STATUS_TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.ON_HOLD}) | _REFUND_EXITS,
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.ON_HOLD}) | _REFUND_EXITS,
    OrderStatus.ON_HOLD: frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING}) | _REFUND_EXITS,
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}) | _REFUND_EXITS,
    OrderStatus.PARTIALLY_REFUNDED: frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED}) | _REFUND_EXITS,
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

PAYMENT_TRANSITIONS: Mapping[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.UNPAID: frozenset({PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED, PaymentStatus.FAILED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

FULFILLMENT_TRANSITIONS: Mapping[FulfillmentStatus, FrozenSet[FulfillmentStatus]] = {
    FulfillmentStatus.UNFULFILLED: frozenset(
        {FulfillmentStatus.PARTIALLY_FULFILLED, FulfillmentStatus.FULFILLED, FulfillmentStatus.CANCELLED}
    ),
    FulfillmentStatus.PARTIALLY_FULFILLED: frozenset({FulfillmentStatus.FULFILLED, FulfillmentStatus.CANCELLED}),
    FulfillmentStatus.FULFILLED: frozenset(),
    FulfillmentStatus.CANCELLED: frozenset(),
}


def can_transition(table: Mapping[Any, FrozenSet[Any]], current: Any, target: Any) -> bool:
    """Staying on the same value is always allowed; the event changed another axis."""
    return current == target or target in table[current]


@dataclass(frozen=True, slots=True)
class OrderItem:
    order_item_id: UUID
    listing_id: UUID
    title: str
    quantity: int
    unit_price: Decimal
    is_digital: bool = False
    refund_status: str = "none"
    refund_amount: Decimal = ZERO

    @property
    def subtotal(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)

    @property
    def refundable_amount(self) -> Decimal:
        return to_money(self.subtotal - self.refund_amount)


@dataclass(frozen=True, slots=True)
class ShipmentItem:
    order_item_id: UUID
    quantity: int


@dataclass(frozen=True, slots=True)
class OrderShipment:
    shipment_id: UUID
    carrier: str
    tracking_number: str
    status: ShipmentStatus
    created_at: datetime
    items: Tuple[ShipmentItem, ...] = ()
    method: str = "standard"
    tracking_url: Optional[str] = None
    delivered_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class OrderNote:
    note_id: UUID
    note_type: OrderNoteType
    content: str
    created_at: datetime
    author_id: Optional[UUID] = None

    @property
    def is_customer_visible(self) -> bool:
        return self.note_type == OrderNoteType.CUSTOMER


@dataclass(frozen=True, slots=True)
class OrderEvent:
    event_id: UUID
    order_id: UUID
    event_type: OrderEventType
    payload: Dict[str, Any]
    created_at: datetime
    actor_id: Optional[UUID] = None


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    status: OrderStatus
    payment_status: PaymentStatus
    fulfillment_status: FulfillmentStatus


@dataclass(frozen=True, slots=True)
class Order:
    order_id: UUID
    cart_id: UUID
    store_id: UUID
    currency: str
    status: OrderStatus
    payment_status: PaymentStatus
    fulfillment_status: FulfillmentStatus
    subtotal: Decimal
    total_discounts: Decimal
    total_shipping: Decimal
    total_tax: Decimal
    total_price: Decimal
    created_at: datetime
    updated_at: datetime
    account_id: Optional[UUID] = None
    device_id: Optional[str] = None
    refund_total: Decimal = ZERO
    items: Tuple[OrderItem, ...] = ()
    shipments: Tuple[OrderShipment, ...] = ()
    refunds: Tuple[OrderRefund, ...] = ()
    coupon_codes: Tuple[str, ...] = ()
    shipping_carrier: Optional[str] = None
    shipping_service: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_intent_ids: Tuple[str, ...] = ()
    notes: Tuple[OrderNote, ...] = ()
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        require_utc_timestamp("updated_at", self.updated_at)

    # -- queries -----------------------------------------------------------

    @property
    def snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(self.status, self.payment_status, self.fulfillment_status)

    @property
    def refundable_total(self) -> Decimal:
        return to_money(self.total_price - self.refund_total)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def find_item(self, order_item_id: UUID) -> OrderItem:
        for item in self.items:
            if item.order_item_id == order_item_id:
                return item
        raise NotFoundError("Order item", order_item_id)

    def find_shipment(self, shipment_id: UUID) -> OrderShipment:
        for shipment in self.shipments:
            if shipment.shipment_id == shipment_id:
                return shipment
        raise NotFoundError("Shipment", shipment_id)

    def find_refund(self, refund_id: UUID) -> OrderRefund:
        for refund in self.refunds:
            if refund.refund_id == refund_id:
                return refund
        raise NotFoundError("Refund", refund_id)

    def shipped_quantities(self) -> Dict[UUID, int]:
        shipped: Dict[UUID, int] = {}
        for shipment in self.shipments:
            for line in shipment.items:
                shipped[line.order_item_id] = shipped.get(line.order_item_id, 0) + line.quantity
        return shipped

    def computed_fulfillment(self) -> FulfillmentStatus:
        shipped = self.shipped_quantities()
        total = sum(item.quantity for item in self.items)
        done = sum(min(shipped.get(item.order_item_id, 0), item.quantity) for item in self.items)
        if done == 0:
            return FulfillmentStatus.UNFULFILLED
        if done >= total:
            return FulfillmentStatus.FULFILLED
        return FulfillmentStatus.PARTIALLY_FULFILLED

    # -- transitions -------------------------------------------------------

    def _transition(
        self,
        event_type: OrderEventType,
        payload: Dict[str, Any],
        *,
        at: datetime,
        actor_id: Optional[UUID],
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        fulfillment_status: Optional[FulfillmentStatus] = None,
        **changes: Any,
    ) -> Tuple["Order", OrderEvent]:
        target = StatusSnapshot(
            status or self.status,
            payment_status or self.payment_status,
            fulfillment_status or self.fulfillment_status,
        )
        check_snapshot_transition(self.snapshot, target, context=f"order {self.order_id}")
        updated = replace(
            self,
            status=target.status,
            payment_status=target.payment_status,
            fulfillment_status=target.fulfillment_status,
            updated_at=at,
            **changes,
        )
        return updated, order_event(updated, event_type, payload, at=at, actor_id=actor_id)

    def with_payment_intent(self, intent_id: str, *, at: datetime) -> Tuple["Order", OrderEvent]:
        if self.payment_status not in (PaymentStatus.UNPAID, PaymentStatus.PENDING):
            raise ValidationError(f"Order payment is already {self.payment_status.value}")
        if self.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            raise ValidationError(f"Order is {self.status.value}")
        return self._transition(
            OrderEventType.PAYMENT_INTENT_CREATED,
            {"payment_intent_id": intent_id, "superseded": list(self.payment_intent_ids)},
            at=at,
            actor_id=None,
            payment_status=PaymentStatus.PENDING,
            payment_intent_id=intent_id,
            payment_intent_ids=self.payment_intent_ids + (intent_id,),
        )

    def has_payment_intent(self, intent_id: str) -> bool:
        return intent_id in self.payment_intent_ids or intent_id == self.payment_intent_id

    def paid(self, *, intent_id: str, at: datetime) -> Tuple["Order", OrderEvent]:
        if self.payment_status not in (PaymentStatus.UNPAID, PaymentStatus.PENDING):
            raise ValidationError(f"Order payment is already {self.payment_status.value}")
        if self.status == OrderStatus.CANCELLED:
            raise ValidationError("Order was cancelled before payment completed")
        status = OrderStatus.PROCESSING if self.status == OrderStatus.PENDING else self.status
        # Whichever intent settles becomes the one refunds go back to.
        return self._transition(
            OrderEventType.PAYMENT_RECEIVED,
            {"payment_intent_id": intent_id, "amount": str(self.total_price)},
            at=at,
            actor_id=None,
            status=status,
            payment_status=PaymentStatus.PAID,
            payment_intent_id=intent_id,
            paid_at=at,
        )

    def payment_failed(self, *, intent_id: str, message: str, at: datetime) -> Tuple["Order", OrderEvent]:
        if self.payment_status not in (PaymentStatus.UNPAID, PaymentStatus.PENDING):
            raise ValidationError(f"Order payment is already {self.payment_status.value}")
        return self._transition(
            OrderEventType.PAYMENT_FAILED,
            {"payment_intent_id": intent_id, "message": message},
            at=at,
            actor_id=None,
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.FAILED,
            fulfillment_status=FulfillmentStatus.CANCELLED,
            cancelled_at=at,
        )

    def with_shipment(
        self, shipment: OrderShipment, *, at: datetime, actor_id: Optional[UUID]
    ) -> Tuple["Order", OrderEvent]:
        if not self.is_paid:
            raise ValidationError("Order must be paid before it can ship")
        if not can_transition(STATUS_TRANSITIONS, self.status, OrderStatus.SHIPPED):
            raise ValidationError(f"Cannot ship an order that is {self.status.value}")
        if not shipment.items:
            raise ValidationError("A shipment must contain at least one item")

        shipped = self.shipped_quantities()
        for line in shipment.items:
            item = self.find_item(line.order_item_id)
            if line.quantity < 1:
                raise ValidationError("Shipment quantities must be positive")
            remaining = item.quantity - shipped.get(item.order_item_id, 0)
            if line.quantity > remaining:
                raise ValidationError(f"Only {remaining} of {item.title} remain to be shipped")
            shipped[item.order_item_id] = shipped.get(item.order_item_id, 0) + line.quantity

        with_shipments = replace(self, shipments=self.shipments + (shipment,))
        return with_shipments._transition(
            OrderEventType.SHIPMENT_CREATED,
            {
                "shipment_id": str(shipment.shipment_id),
                "carrier": shipment.carrier,
                "tracking_number": shipment.tracking_number,
            },
            at=at,
            actor_id=actor_id,
            status=OrderStatus.SHIPPED,
            fulfillment_status=with_shipments.computed_fulfillment(),
            shipped_at=self.shipped_at or at,
        )

    def with_delivery(
        self, shipment_id: UUID, *, at: datetime, actor_id: Optional[UUID]
    ) -> Tuple["Order", OrderEvent]:
        shipment = self.find_shipment(shipment_id)
        if shipment.status == ShipmentStatus.DELIVERED:
            raise ValidationError("Shipment is already delivered")
        shipments = tuple(
            replace(s, status=ShipmentStatus.DELIVERED, delivered_at=at) if s.shipment_id == shipment_id else s
            for s in self.shipments
        )
        all_delivered = self.fulfillment_status == FulfillmentStatus.FULFILLED and all(
            s.status == ShipmentStatus.DELIVERED for s in shipments
        )
        status = self.status
        delivered_at = self.delivered_at
        if all_delivered and can_transition(STATUS_TRANSITIONS, self.status, OrderStatus.DELIVERED):
            status = OrderStatus.DELIVERED
            delivered_at = at
        return self._transition(
            OrderEventType.DELIVERY_CONFIRMED,
            {"shipment_id": str(shipment_id), "delivery_date": at.isoformat(), "order_delivered": all_delivered},
            at=at,
            actor_id=actor_id,
            status=status,
            shipments=shipments,
            delivered_at=delivered_at,
        )

    def cancelled(self, *, reason: str, at: datetime, actor_id: Optional[UUID]) -> Tuple["Order", OrderEvent]:
        if self.is_paid or self.payment_status == PaymentStatus.REFUNDED:
            raise ValidationError("Paid orders are cancelled by refunding them")
        if not can_transition(STATUS_TRANSITIONS, self.status, OrderStatus.CANCELLED) or self.status == OrderStatus.CANCELLED:
            raise ValidationError(f"Cannot cancel an order that is {self.status.value}")
        return self._transition(
            OrderEventType.ORDER_CANCELLED,
            {"reason": reason},
            at=at,
            actor_id=actor_id,
            status=OrderStatus.CANCELLED,
            fulfillment_status=FulfillmentStatus.CANCELLED,
            cancelled_at=at,
        )

    def on_hold(self, *, note: Optional[str], at: datetime, actor_id: Optional[UUID]) -> Tuple["Order", OrderEvent]:
        if self.status not in (OrderStatus.PENDING, OrderStatus.PROCESSING):
            raise ValidationError(f"Cannot hold an order that is {self.status.value}")
        return self._transition(
            OrderEventType.STATUS_CHANGE,
            {"old_status": self.status.value, "new_status": OrderStatus.ON_HOLD.value, "note": note},
            at=at,
            actor_id=actor_id,
            status=OrderStatus.ON_HOLD,
        )

    def resumed(self, *, at: datetime, actor_id: Optional[UUID]) -> Tuple["Order", OrderEvent]:
        if self.status != OrderStatus.ON_HOLD:
            raise ValidationError("Order is not on hold")
        target = OrderStatus.PROCESSING if self.is_paid else OrderStatus.PENDING
        return self._transition(
            OrderEventType.STATUS_CHANGE,
            {"old_status": self.status.value, "new_status": target.value},
            at=at,
            actor_id=actor_id,
            status=target,
        )

    def with_refund_requested(
        self, refund: OrderRefund, *, at: datetime, actor_id: Optional[UUID]
    ) -> Tuple["Order", OrderEvent]:
        return self._transition(
            OrderEventType.REFUND_REQUESTED,
            _refund_payload(refund),
            at=at,
            actor_id=actor_id,
            refunds=self.refunds + (refund,),
        )

    def with_refund_applied(
        self, refund: OrderRefund, *, at: datetime, actor_id: Optional[UUID]
    ) -> Tuple["Order", OrderEvent]:
        """
        Record an approved refund: refund_total grows, the order becomes
        refunded once everything is refunded and partially_refunded otherwise.
        """

        if refund.amount > self.refundable_total:
            raise ValidationError(f"Refund exceeds the refundable amount of {self.refundable_total}")
        refund_total = to_money(self.refund_total + refund.amount)
        fully_refunded = refund_total >= self.total_price
        status = OrderStatus.REFUNDED if fully_refunded else OrderStatus.PARTIALLY_REFUNDED
        if not can_transition(STATUS_TRANSITIONS, self.status, status):
            raise ValidationError(f"Cannot refund an order that is {self.status.value}")
        payment_status = self.payment_status
        if fully_refunded and self.payment_status == PaymentStatus.PAID:
            payment_status = PaymentStatus.REFUNDED

        items = self.items
        if refund.order_item_id is not None:
            item = self.find_item(refund.order_item_id)
            if refund.amount > item.refundable_amount:
                raise ValidationError(f"Refund exceeds the refundable amount of {item.refundable_amount} for this item")
            items = tuple(
                replace(i, refund_status="completed", refund_amount=to_money(i.refund_amount + refund.amount))
                if i.order_item_id == refund.order_item_id
                else i
                for i in self.items
            )

        refunds = _upsert_refund(self.refunds, refund)
        fulfillment = self.fulfillment_status
        if fully_refunded and fulfillment == FulfillmentStatus.UNFULFILLED:
            fulfillment = FulfillmentStatus.CANCELLED
        return self._transition(
            OrderEventType.REFUND_PROCESSED,
            _refund_payload(refund),
            at=at,
            actor_id=actor_id,
            status=status,
            payment_status=payment_status,
            fulfillment_status=fulfillment,
            refund_total=refund_total,
            items=items,
            refunds=refunds,
        )

    def with_refund_rejected(
        self, refund: OrderRefund, *, at: datetime, actor_id: Optional[UUID]
    ) -> Tuple["Order", OrderEvent]:
        return self._transition(
            OrderEventType.REFUND_REJECTED,
            _refund_payload(refund),
            at=at,
            actor_id=actor_id,
            refunds=_upsert_refund(self.refunds, refund),
        )

    def with_note(self, note: OrderNote, *, at: datetime) -> Tuple["Order", OrderEvent]:
        if not note.content.strip():
            raise ValidationError("Note content is required")
        return self._transition(
            OrderEventType.NOTE_ADDED,
            {"note_id": str(note.note_id), "note_type": note.note_type.value},
            at=at,
            actor_id=note.author_id,
            notes=self.notes + (note,),
        )

    def notes_visible_to_customer(self) -> Tuple[OrderNote, ...]:
        return tuple(note for note in self.notes if note.is_customer_visible)


def check_snapshot_transition(current: StatusSnapshot, target: StatusSnapshot, *, context: str) -> None:
    if not can_transition(STATUS_TRANSITIONS, current.status, target.status):
        raise ValidationError(
            f"Invalid status transition for {context}: {current.status.value} -> {target.status.value}"
        )
    if not can_transition(PAYMENT_TRANSITIONS, current.payment_status, target.payment_status):
        raise ValidationError(
            f"Invalid payment transition for {context}: "
            f"{current.payment_status.value} -> {target.payment_status.value}"
        )
    if not can_transition(FULFILLMENT_TRANSITIONS, current.fulfillment_status, target.fulfillment_status):
        raise ValidationError(
            f"Invalid fulfillment transition for {context}: "
            f"{current.fulfillment_status.value} -> {target.fulfillment_status.value}"
        )


def order_event(
    order: Order,
    event_type: OrderEventType,
    payload: Dict[str, Any],
    *,
    at: datetime,
    actor_id: Optional[UUID],
) -> OrderEvent:
    data = dict(payload)
    data["status"] = order.status.value
    data["payment_status"] = order.payment_status.value
    data["fulfillment_status"] = order.fulfillment_status.value
    return OrderEvent(
        event_id=uuid4(),
        order_id=order.order_id,
        event_type=event_type,
        payload=data,
        created_at=at,
        actor_id=actor_id,
    )


def order_from_cart(
    cart: Cart, *, at: datetime, actor_id: Optional[UUID]
) -> Tuple[Order, OrderEvent]:
    """Freeze a cart into a new pending, unpaid, unfulfilled order."""

    if cart.is_empty:
        raise ValidationError("Your cart is empty")
    store_ids = {item.store_id for item in cart.items}
    if len(store_ids) != 1:
        raise ValidationError("All items must be from the same store")
    selected = cart.selected_shipping
    if selected is None and not cart.is_digital_only:
        raise ValidationError("Shipping method is required")

    items = tuple(
        OrderItem(
            order_item_id=uuid4(),
            listing_id=item.listing_id,
            title=item.title,
            quantity=item.quantity,
            unit_price=item.price_snapshot,
            is_digital=item.is_digital,
        )
        for item in cart.items
    )
    order = Order(
        order_id=uuid4(),
        cart_id=cart.cart_id,
        store_id=next(iter(store_ids)),
        currency=cart.currency,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
        fulfillment_status=FulfillmentStatus.UNFULFILLED,
        subtotal=cart.subtotal,
        total_discounts=cart.total_discounts,
        total_shipping=cart.total_shipping,
        total_tax=cart.total_tax,
        total_price=cart.total_price,
        created_at=at,
        updated_at=at,
        account_id=cart.account_id,
        device_id=cart.device_id,
        items=items,
        coupon_codes=tuple(c.code for c in sorted(cart.coupons, key=lambda c: c.application_order)),
        shipping_carrier=selected.carrier if selected is not None else None,
        shipping_service=selected.service if selected is not None else None,
    )
    event = order_event(order, OrderEventType.ORDER_CREATED, {"cart_id": str(cart.cart_id)}, at=at, actor_id=actor_id)
    return order, event


def replay(events: Sequence[OrderEvent]) -> StatusSnapshot:
    """
    Rebuild the three status axes from an order's event log, verifying that
    every recorded step is a legal transition.
    """

    if not events:
        raise InvariantViolationError("Order has no events")
    ordered = sorted(events, key=lambda e: e.created_at)
    first = ordered[0]
    if first.event_type != OrderEventType.ORDER_CREATED:
        raise InvariantViolationError(f"Order {first.order_id} history does not start with order_created")

    current = _snapshot_from_payload(first)
    for event in ordered[1:]:
        target = _snapshot_from_payload(event)
        try:
            check_snapshot_transition(current, target, context=f"event {event.event_id}")
        except ValidationError as exc:
            raise InvariantViolationError(exc.message) from exc
        current = target
    return current


def verify_against_history(order: Order, events: Iterable[OrderEvent]) -> None:
    rebuilt = replay(list(events))
    if rebuilt != order.snapshot:
        raise InvariantViolationError(
            f"Order {order.order_id} status {order.snapshot} disagrees with its event history {rebuilt}"
        )


def _snapshot_from_payload(event: OrderEvent) -> StatusSnapshot:
    try:
        return StatusSnapshot(
            OrderStatus(event.payload["status"]),
            PaymentStatus(event.payload["payment_status"]),
            FulfillmentStatus(event.payload["fulfillment_status"]),
        )
    except (KeyError, ValueError) as exc:
        raise InvariantViolationError(f"Event {event.event_id} has no usable status payload") from exc


def _refund_payload(refund: OrderRefund) -> Dict[str, Any]:
    return {
        "refund_id": str(refund.refund_id),
        "refund_amount": str(refund.amount),
        "refund_method": refund.method.value,
        "refund_status": refund.status.value,
        "order_item_id": str(refund.order_item_id) if refund.order_item_id else None,
    }


def _upsert_refund(refunds: Tuple[OrderRefund, ...], refund: OrderRefund) -> Tuple[OrderRefund, ...]:
    if any(r.refund_id == refund.refund_id for r in refunds):
        return tuple(refund if r.refund_id == refund.refund_id else r for r in refunds)
    return refunds + (refund,)
