"""
Order repository (persistence).

An order is stored across `orders`, `order_items`, `order_shipments`,
`order_refunds` and `order_notes`, with its audit trail in `order_events`.
Every write is one database function call:

- create_order_from_cart: order + items + hold transfer + cart converted +
  coupon redemptions + order_created event; refused when the cart
  version moved since checkout read it
- save_order: order row, shipments, refunds, notes, item refund state + events
- settle_order_payment: consume the order's holds + save_order
- cancel_order_release: release the order's holds + save_order
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from supabase import Client

from domain.cart import Cart
from domain.coupon import CouponRedemption
from domain.order import (
    FulfillmentStatus,
    Order,
    OrderEvent,
    OrderEventType,
    OrderItem,
    OrderNote,
    OrderNoteType,
    OrderShipment,
    OrderStatus,
    PaymentStatus,
    ShipmentItem,
    ShipmentStatus,
)
from domain.refund import OrderRefund, RefundMethod, RefundReasonCategory, RefundStatus
from repositories.rpc import call_atomic
from repositories.serialization import (
    money,
    optional_datetime,
    optional_iso_utc,
    optional_uuid,
    parse_utc_datetime,
    to_iso_utc,
    uuid_str,
)

_ORDERS_TABLE: str = "orders"
_ORDER_EVENTS_TABLE: str = "order_events"
_ORDER_REFUNDS_TABLE: str = "order_refunds"
_ORDER_SELECT: str = "*, order_items(*), order_shipments(*), order_refunds(*), order_notes(*)"


def _row_to_refund(row: Mapping[str, Any]) -> OrderRefund:
    category = row.get("reason_category")
    return OrderRefund(
        refund_id=UUID(str(row["id"])),
        order_id=UUID(str(row["order_id"])),
        amount=money(row["amount"]),
        reason=str(row["reason"]),
        method=RefundMethod(str(row["method"])),
        status=RefundStatus(str(row["status"])),
        created_at=parse_utc_datetime(row["created_at"]),
        order_item_id=optional_uuid(row.get("order_item_id")),
        reason_category=RefundReasonCategory(str(category)) if category else None,
        requested_by=optional_uuid(row.get("requested_by")),
        processed_by=optional_uuid(row.get("processed_by")),
        processed_at=optional_datetime(row.get("processed_at")),
        gateway_refund_id=row.get("gateway_refund_id"),
    )


def _row_to_shipment(row: Mapping[str, Any]) -> OrderShipment:
    return OrderShipment(
        shipment_id=UUID(str(row["id"])),
        carrier=str(row["carrier"]),
        tracking_number=str(row["tracking_number"]),
        status=ShipmentStatus(str(row["status"])),
        created_at=parse_utc_datetime(row["created_at"]),
        items=tuple(
            ShipmentItem(order_item_id=UUID(str(i["order_item_id"])), quantity=int(i["quantity"]))
            for i in row.get("items") or []
        ),
        method=str(row.get("method") or "standard"),
        tracking_url=row.get("tracking_url"),
        delivered_at=optional_datetime(row.get("delivered_at")),
    )


def _row_to_note(row: Mapping[str, Any]) -> OrderNote:
    return OrderNote(
        note_id=UUID(str(row["id"])),
        note_type=OrderNoteType(str(row["note_type"])),
        content=str(row["content"]),
        created_at=parse_utc_datetime(row["created_at"]),
        author_id=optional_uuid(row.get("author_id")),
    )


def _row_to_order(row: Mapping[str, Any]) -> Order:
    """Convert an order row with its embedded child rows into an Order."""

    items = tuple(
        OrderItem(
            order_item_id=UUID(str(i["id"])),
            listing_id=UUID(str(i["listing_id"])),
            title=str(i["title"]),
            quantity=int(i["quantity"]),
            unit_price=money(i["unit_price"]),
            is_digital=bool(i.get("is_digital", False)),
            refund_status=str(i.get("refund_status") or "none"),
            refund_amount=money(i.get("refund_amount")),
        )
        for i in sorted(row.get("order_items") or [], key=lambda r: int(r.get("position", 0)))
    )
    shipments = tuple(
        _row_to_shipment(s) for s in sorted(row.get("order_shipments") or [], key=lambda r: str(r["created_at"]))
    )
    refunds = tuple(
        _row_to_refund(r) for r in sorted(row.get("order_refunds") or [], key=lambda r: str(r["created_at"]))
    )
    notes = tuple(
        _row_to_note(n) for n in sorted(row.get("order_notes") or [], key=lambda r: str(r["created_at"]))
    )
    return Order(
        order_id=UUID(str(row["id"])),
        cart_id=UUID(str(row["cart_id"])),
        store_id=UUID(str(row["store_id"])),
        currency=str(row.get("currency") or "USD"),
        status=OrderStatus(str(row["status"])),
        payment_status=PaymentStatus(str(row["payment_status"])),
        fulfillment_status=FulfillmentStatus(str(row["fulfillment_status"])),
        subtotal=money(row["subtotal"]),
        total_discounts=money(row.get("total_discounts")),
        total_shipping=money(row.get("total_shipping")),
        total_tax=money(row.get("total_tax")),
        total_price=money(row["total_price"]),
        created_at=parse_utc_datetime(row["created_at"]),
        updated_at=parse_utc_datetime(row["updated_at"]),
        account_id=optional_uuid(row.get("account_id")),
        device_id=row.get("device_id"),
        refund_total=money(row.get("refund_total")),
        items=items,
        shipments=shipments,
        refunds=refunds,
        coupon_codes=tuple(row.get("coupon_codes") or ()),
        shipping_carrier=row.get("shipping_carrier"),
        shipping_service=row.get("shipping_service"),
        payment_intent_id=row.get("payment_intent_id"),
        payment_intent_ids=tuple(row.get("payment_intent_ids") or ()),
        notes=notes,
        paid_at=optional_datetime(row.get("paid_at")),
        shipped_at=optional_datetime(row.get("shipped_at")),
        delivered_at=optional_datetime(row.get("delivered_at")),
        cancelled_at=optional_datetime(row.get("cancelled_at")),
    )


def _row_to_event(row: Mapping[str, Any]) -> OrderEvent:
    return OrderEvent(
        event_id=UUID(str(row["id"])),
        order_id=UUID(str(row["order_id"])),
        event_type=OrderEventType(str(row["event_type"])),
        payload=dict(row.get("payload") or {}),
        created_at=parse_utc_datetime(row["created_at"]),
        actor_id=optional_uuid(row.get("actor_id")),
    )


def order_to_payload(order: Order) -> Dict[str, Any]:
    """Serialize an Order into the JSON document accepted by the order functions."""

    return {
        "id": str(order.order_id),
        "cart_id": str(order.cart_id),
        "store_id": str(order.store_id),
        "account_id": uuid_str(order.account_id),
        "device_id": order.device_id,
        "currency": order.currency,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "fulfillment_status": order.fulfillment_status.value,
        "subtotal": str(order.subtotal),
        "total_discounts": str(order.total_discounts),
        "total_shipping": str(order.total_shipping),
        "total_tax": str(order.total_tax),
        "total_price": str(order.total_price),
        "refund_total": str(order.refund_total),
        "coupon_codes": list(order.coupon_codes),
        "shipping_carrier": order.shipping_carrier,
        "shipping_service": order.shipping_service,
        "payment_intent_id": order.payment_intent_id,
        "payment_intent_ids": list(order.payment_intent_ids),
        "paid_at": optional_iso_utc(order.paid_at, name="paid_at"),
        "shipped_at": optional_iso_utc(order.shipped_at, name="shipped_at"),
        "delivered_at": optional_iso_utc(order.delivered_at, name="delivered_at"),
        "cancelled_at": optional_iso_utc(order.cancelled_at, name="cancelled_at"),
        "created_at": to_iso_utc(order.created_at, name="created_at"),
        "updated_at": to_iso_utc(order.updated_at, name="updated_at"),
        "items": [
            {
                "id": str(item.order_item_id),
                "position": position,
                "listing_id": str(item.listing_id),
                "title": item.title,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "is_digital": item.is_digital,
                "refund_status": item.refund_status,
                "refund_amount": str(item.refund_amount),
            }
            for position, item in enumerate(order.items)
        ],
        "shipments": [
            {
                "id": str(s.shipment_id),
                "carrier": s.carrier,
                "tracking_number": s.tracking_number,
                "tracking_url": s.tracking_url,
                "method": s.method,
                "status": s.status.value,
                "items": [{"order_item_id": str(i.order_item_id), "quantity": i.quantity} for i in s.items],
                "delivered_at": optional_iso_utc(s.delivered_at, name="delivered_at"),
                "created_at": to_iso_utc(s.created_at, name="created_at"),
            }
            for s in order.shipments
        ],
        "refunds": [
            {
                "id": str(r.refund_id),
                "order_item_id": uuid_str(r.order_item_id),
                "amount": str(r.amount),
                "reason": r.reason,
                "reason_category": r.reason_category.value if r.reason_category else None,
                "method": r.method.value,
                "status": r.status.value,
                "requested_by": uuid_str(r.requested_by),
                "processed_by": uuid_str(r.processed_by),
                "processed_at": optional_iso_utc(r.processed_at, name="processed_at"),
                "gateway_refund_id": r.gateway_refund_id,
                "created_at": to_iso_utc(r.created_at, name="created_at"),
            }
            for r in order.refunds
        ],
        "notes": [
            {
                "id": str(n.note_id),
                "note_type": n.note_type.value,
                "content": n.content,
                "author_id": uuid_str(n.author_id),
                "created_at": to_iso_utc(n.created_at, name="created_at"),
            }
            for n in order.notes
        ],
    }


def event_to_payload(event: OrderEvent) -> Dict[str, Any]:
    return {
        "id": str(event.event_id),
        "order_id": str(event.order_id),
        "event_type": event.event_type.value,
        "payload": event.payload,
        "actor_id": uuid_str(event.actor_id),
        "created_at": to_iso_utc(event.created_at, name="created_at"),
    }


class SupabaseOrderRepository:
    def __init__(self, client: Client) -> None:
        self._client = client

    def _select_orders(self, query_name: str, build) -> List[Order]:
        response = build(self._client.table(_ORDERS_TABLE).select(_ORDER_SELECT)).execute()
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to {query_name}: {error}")

        rows = getattr(response, "data", None) or []
        return [_row_to_order(row) for row in rows]

    def get(self, order_id: UUID) -> Optional[Order]:
        orders = self._select_orders("get order", lambda q: q.eq("id", str(order_id)).limit(1))
        return orders[0] if orders else None

    def find_by_payment_intent(self, intent_id: str) -> Optional[Order]:
        orders = self._select_orders(
            "find order by payment intent", lambda q: q.contains("payment_intent_ids", [intent_id]).limit(1)
        )
        return orders[0] if orders else None

    def find_by_refund(self, refund_id: UUID) -> Optional[Order]:
        response = (
            self._client.table(_ORDER_REFUNDS_TABLE)
            .select("order_id")
            .eq("id", str(refund_id))
            .limit(1)
            .execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to find refund: {error}")

        rows = getattr(response, "data", None) or []
        return self.get(UUID(str(rows[0]["order_id"]))) if rows else None

    def list_events(self, order_id: UUID) -> List[OrderEvent]:
        response = (
            self._client.table(_ORDER_EVENTS_TABLE)
            .select("*")
            .eq("order_id", str(order_id))
            .order("created_at")
            .execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to list order events: {error}")

        rows = getattr(response, "data", None) or []
        return [_row_to_event(row) for row in rows]

    def list_unpaid_created_before(self, cutoff: datetime) -> List[Order]:
        return self._select_orders(
            "list unpaid orders",
            lambda q: q.in_("payment_status", [PaymentStatus.UNPAID.value, PaymentStatus.PENDING.value])
            .in_("status", [OrderStatus.PENDING.value, OrderStatus.ON_HOLD.value])
            .lt("created_at", to_iso_utc(cutoff, name="cutoff")),
        )

    def list_for_store(self, store_id: UUID, status: Optional[OrderStatus] = None) -> List[Order]:
        def build(q):
            q = q.eq("store_id", str(store_id))
            if status is not None:
                q = q.eq("status", status.value)
            return q.order("created_at", desc=True)

        return self._select_orders("list store orders", build)

    def list_for_customer(self, *, account_id: Optional[UUID], device_id: Optional[str]) -> List[Order]:
        if account_id is None and not device_id:
            return []

        def build(q):
            if account_id is not None:
                q = q.eq("account_id", str(account_id))
            else:
                q = q.is_("account_id", "null").eq("device_id", device_id)
            return q.order("created_at", desc=True)

        return self._select_orders("list customer orders", build)

    def create_from_cart(
        self,
        order: Order,
        event: OrderEvent,
        cart: Cart,
        redemptions: Sequence[CouponRedemption],
    ) -> None:
        call_atomic(
            self._client,
            "create_order_from_cart",
            {
                "p_order": order_to_payload(order),
                "p_event": event_to_payload(event),
                "p_cart_id": str(cart.cart_id),
                "p_cart_version": cart.version,
                "p_redemptions": [
                    {
                        "coupon_id": str(r.coupon_id),
                        "customer_key": r.customer_key,
                        "order_id": str(r.order_id),
                        "redeemed_at": to_iso_utc(r.redeemed_at, name="redeemed_at"),
                    }
                    for r in redemptions
                ],
            },
        )

    def save(self, order: Order, events: Sequence[OrderEvent]) -> None:
        call_atomic(
            self._client,
            "save_order",
            {"p_order": order_to_payload(order), "p_events": [event_to_payload(e) for e in events]},
        )

    def settle_payment(self, order: Order, event: OrderEvent) -> None:
        call_atomic(
            self._client,
            "settle_order_payment",
            {"p_order": order_to_payload(order), "p_event": event_to_payload(event)},
        )

    def cancel(self, order: Order, event: OrderEvent) -> None:
        call_atomic(
            self._client,
            "cancel_order_release",
            {"p_order": order_to_payload(order), "p_event": event_to_payload(event)},
        )
