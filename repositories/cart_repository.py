"""
Cart repository (persistence).

A cart is stored across `carts`, `cart_items`, `cart_coupons` and
`cart_shipping_options`. Reads use one embedded select; writes go through the
`save_cart` database function, which replaces the child rows and appends the
cart events in a single transaction.

`save_cart` compares the stored `version` with the one the cart was read at
and refuses the write when another request saved in between.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from supabase import Client

from domain.cart import (
    Cart,
    CartCoupon,
    CartEvent,
    CartEventType,
    CartItem,
    CartShippingOption,
    CartStatus,
)
from domain.coupon import DiscountType
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

_CARTS_TABLE: str = "carts"
_CART_EVENTS_TABLE: str = "cart_events"
_CART_SELECT: str = "*, cart_items(*), cart_coupons(*), cart_shipping_options(*)"


def _row_to_cart(row: Mapping[str, Any]) -> Cart:
    """Convert a cart row with its embedded child rows into a Cart."""

    items = tuple(
        CartItem(
            cart_item_id=UUID(str(item["id"])),
            listing_id=UUID(str(item["listing_id"])),
            store_id=UUID(str(item["store_id"])),
            title=str(item["title"]),
            quantity=int(item["quantity"]),
            price_snapshot=money(item["price_snapshot"]),
            added_at=parse_utc_datetime(item["added_at"]),
            updated_at=parse_utc_datetime(item["updated_at"]),
            is_digital=bool(item.get("is_digital", False)),
            is_gift=bool(item.get("is_gift", False)),
            selected_options=dict(item.get("selected_options") or {}),
        )
        for item in sorted(row.get("cart_items") or [], key=lambda r: str(r["added_at"]))
    )
    coupons = tuple(
        CartCoupon(
            coupon_id=UUID(str(c["coupon_id"])),
            code=str(c["code"]),
            discount_type=DiscountType(str(c["discount_type"])),
            application_order=int(c["application_order"]),
            applied_discount=money(c.get("applied_discount")),
        )
        for c in sorted(row.get("cart_coupons") or [], key=lambda r: int(r["application_order"]))
    )
    options = tuple(
        CartShippingOption(
            option_id=UUID(str(o["id"])),
            carrier=str(o["carrier"]),
            service=str(o["service"]),
            amount=money(o["amount"]),
            transit_days_min=o.get("transit_days_min"),
            transit_days_max=o.get("transit_days_max"),
            is_selected=bool(o.get("is_selected", False)),
        )
        for o in sorted(row.get("cart_shipping_options") or [], key=lambda r: money(r["amount"]))
    )
    return Cart(
        cart_id=UUID(str(row["id"])),
        status=CartStatus(str(row["status"])),
        currency=str(row.get("currency") or "USD"),
        created_at=parse_utc_datetime(row["created_at"]),
        updated_at=parse_utc_datetime(row["updated_at"]),
        account_id=optional_uuid(row.get("account_id")),
        device_id=row.get("device_id"),
        expires_at=optional_datetime(row.get("expires_at")),
        items=items,
        coupons=coupons,
        shipping_options=options,
        subtotal=money(row.get("subtotal")),
        total_discounts=money(row.get("total_discounts")),
        total_shipping=money(row.get("total_shipping")),
        total_tax=money(row.get("total_tax")),
        total_price=money(row.get("total_price")),
        version=int(row.get("version") or 0),
    )


def _row_to_event(row: Mapping[str, Any]) -> CartEvent:
    return CartEvent(
        event_id=UUID(str(row["id"])),
        cart_id=UUID(str(row["cart_id"])),
        event_type=CartEventType(str(row["event_type"])),
        payload=dict(row.get("payload") or {}),
        created_at=parse_utc_datetime(row["created_at"]),
        actor_id=optional_uuid(row.get("actor_id")),
    )


def cart_to_payload(cart: Cart) -> Dict[str, Any]:
    """Serialize a Cart into the JSON document accepted by `save_cart`."""

    return {
        "id": str(cart.cart_id),
        "account_id": uuid_str(cart.account_id),
        "device_id": cart.device_id,
        "status": cart.status.value,
        "currency": cart.currency,
        "subtotal": str(cart.subtotal),
        "total_discounts": str(cart.total_discounts),
        "total_shipping": str(cart.total_shipping),
        "total_tax": str(cart.total_tax),
        "total_price": str(cart.total_price),
        "expires_at": optional_iso_utc(cart.expires_at, name="expires_at"),
        "created_at": to_iso_utc(cart.created_at, name="created_at"),
        "updated_at": to_iso_utc(cart.updated_at, name="updated_at"),
        "version": cart.version,
        "items": [
            {
                "id": str(item.cart_item_id),
                "listing_id": str(item.listing_id),
                "store_id": str(item.store_id),
                "title": item.title,
                "quantity": item.quantity,
                "price_snapshot": str(item.price_snapshot),
                "is_digital": item.is_digital,
                "is_gift": item.is_gift,
                "selected_options": dict(item.selected_options),
                "added_at": to_iso_utc(item.added_at, name="added_at"),
                "updated_at": to_iso_utc(item.updated_at, name="updated_at"),
            }
            for item in cart.items
        ],
        "coupons": [
            {
                "coupon_id": str(c.coupon_id),
                "code": c.code,
                "discount_type": c.discount_type.value,
                "application_order": c.application_order,
                "applied_discount": str(c.applied_discount),
            }
            for c in cart.coupons
        ],
        "shipping_options": [
            {
                "id": str(o.option_id),
                "carrier": o.carrier,
                "service": o.service,
                "amount": str(o.amount),
                "transit_days_min": o.transit_days_min,
                "transit_days_max": o.transit_days_max,
                "is_selected": o.is_selected,
            }
            for o in cart.shipping_options
        ],
    }


def event_to_payload(event: CartEvent) -> Dict[str, Any]:
    return {
        "id": str(event.event_id),
        "cart_id": str(event.cart_id),
        "event_type": event.event_type.value,
        "payload": event.payload,
        "actor_id": uuid_str(event.actor_id),
        "created_at": to_iso_utc(event.created_at, name="created_at"),
    }


class SupabaseCartRepository:
    def __init__(self, client: Client) -> None:
        self._client = client

    def _select_carts(self, query_name: str, build) -> List[Cart]:
        response = build(self._client.table(_CARTS_TABLE).select(_CART_SELECT)).execute()
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to {query_name}: {error}")

        rows = getattr(response, "data", None) or []
        return [_row_to_cart(row) for row in rows]

    def get(self, cart_id: UUID) -> Optional[Cart]:
        carts = self._select_carts("get cart", lambda q: q.eq("id", str(cart_id)).limit(1))
        return carts[0] if carts else None

    def find_active(self, *, account_id: Optional[UUID], device_id: Optional[str]) -> Optional[Cart]:
        if account_id is not None:
            column, value = "account_id", str(account_id)
        elif device_id:
            column, value = "device_id", device_id
        else:
            return None
        carts = self._select_carts(
            "find active cart",
            lambda q: q.eq(column, value).eq("status", CartStatus.ACTIVE.value).limit(1),
        )
        return carts[0] if carts else None

    def save(self, cart: Cart, events: Sequence[CartEvent]) -> Cart:
        result = call_atomic(
            self._client,
            "save_cart",
            {"p_cart": cart_to_payload(cart), "p_events": [event_to_payload(e) for e in events]},
        )
        return replace(cart, version=int(result.get("version", cart.version + 1)))

    def list_events(self, cart_id: UUID) -> List[CartEvent]:
        response = (
            self._client.table(_CART_EVENTS_TABLE)
            .select("*")
            .eq("cart_id", str(cart_id))
            .order("created_at")
            .execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to list cart events: {error}")

        rows = getattr(response, "data", None) or []
        return [_row_to_event(row) for row in rows]

    def list_expired(self, now: datetime) -> List[Cart]:
        return self._select_carts(
            "list expired carts",
            lambda q: q.eq("status", CartStatus.ACTIVE.value).lte("expires_at", to_iso_utc(now, name="now")),
        )
