"""
Repository protocols.

Services depend only on these interfaces. Two implementations exist:
- `repositories.memory`: in-process store used by tests and local runs
- the Supabase repositories (`*_repository.py`), where every multi-row change
  is a single PL/pgSQL function call (see `sql/functions.sql`)

Methods documented as atomic either apply completely or not at all. They raise
the typed errors from `domain.errors` when the store refuses a change, and
`RuntimeError` when the store itself fails.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence
from uuid import UUID

from domain.cart import Cart, CartEvent
from domain.coupon import Coupon, CouponRedemption
from domain.inventory import InventoryHold, InventoryRecord, InventoryTransaction
from domain.listing import Listing, Store
from domain.order import Order, OrderEvent, OrderStatus
from domain.shipping import RateCacheEntry


class ListingRepository(Protocol):
    def get_listing(self, listing_id: UUID) -> Optional[Listing]: ...

    def get_store(self, store_id: UUID) -> Optional[Store]: ...

    def list_for_store(self, store_id: UUID) -> List[Listing]: ...


class InventoryRepository(Protocol):
    def get_record(self, listing_id: UUID) -> Optional[InventoryRecord]: ...

    def create(self, record: InventoryRecord, transaction: Optional[InventoryTransaction]) -> InventoryRecord: ...

    def reserve(self, listing_id: UUID, quantity: int, *, cart_id: UUID, at: datetime) -> InventoryRecord:
        """Atomic check-then-write; raises InsufficientStockError."""
        ...

    def release(self, listing_id: UUID, quantity: int, *, holder_id: UUID, at: datetime) -> int:
        """Release up to `quantity` held by `holder_id`; returns the amount released."""
        ...

    def transfer_hold(
        self, listing_id: UUID, quantity: int, *, cart_id: UUID, order_id: UUID, at: datetime
    ) -> None: ...

    def commit(self, listing_id: UUID, quantity: int, *, order_id: UUID, at: datetime) -> InventoryRecord: ...

    def adjust(
        self,
        listing_id: UUID,
        new_available: int,
        *,
        at: datetime,
        created_by: Optional[UUID],
        notes: Optional[str],
    ) -> InventoryRecord: ...

    def return_stock(
        self, listing_id: UUID, quantity: int, *, order_id: UUID, created_by: Optional[UUID], at: datetime
    ) -> InventoryRecord: ...

    def get_hold(self, listing_id: UUID, holder_id: UUID) -> int: ...

    def list_holds(self, holder_id: UUID) -> List[InventoryHold]: ...

    def list_transactions(self, listing_id: UUID) -> List[InventoryTransaction]: ...

    def list_records(self, listing_ids: Iterable[UUID]) -> List[InventoryRecord]: ...

    def list_listing_ids(self) -> List[UUID]: ...


class CartRepository(Protocol):
    def get(self, cart_id: UUID) -> Optional[Cart]: ...

    def find_active(self, *, account_id: Optional[UUID], device_id: Optional[str]) -> Optional[Cart]: ...

    def save(self, cart: Cart, events: Sequence[CartEvent]) -> Cart:
        """
        Atomically replace the cart (items, coupons, shipping options) and append events.

        `cart.version` must equal the stored version (0 for a new cart), otherwise
        ValidationError; returns the stored cart with its version incremented.
        """
        ...

    def list_events(self, cart_id: UUID) -> List[CartEvent]: ...

    def list_expired(self, now: datetime) -> List[Cart]: ...


class CouponRepository(Protocol):
    def get_by_code(self, code: str) -> Optional[Coupon]: ...

    def get_many(self, coupon_ids: Iterable[UUID]) -> Dict[UUID, Coupon]: ...

    def count_redemptions(self, coupon_id: UUID, customer_key: str) -> int: ...


class RateCacheRepository(Protocol):
    def get_valid(self, cache_key: str, now: datetime) -> List[RateCacheEntry]: ...

    def replace(self, cache_key: str, entries: Sequence[RateCacheEntry]) -> None:
        """Atomically swap every entry stored under `cache_key`."""
        ...


class OrderRepository(Protocol):
    def get(self, order_id: UUID) -> Optional[Order]: ...

    def find_by_payment_intent(self, intent_id: str) -> Optional[Order]:
        """Match any intent ever created for the order, not only the newest."""
        ...

    def find_by_refund(self, refund_id: UUID) -> Optional[Order]: ...

    def list_events(self, order_id: UUID) -> List[OrderEvent]: ...

    def list_unpaid_created_before(self, cutoff: datetime) -> List[Order]: ...

    def list_for_store(self, store_id: UUID, status: Optional[OrderStatus] = None) -> List[Order]:
        """Newest first."""
        ...

    def list_for_customer(self, *, account_id: Optional[UUID], device_id: Optional[str]) -> List[Order]:
        """Newest first."""
        ...

    def create_from_cart(
        self,
        order: Order,
        event: OrderEvent,
        cart: Cart,
        redemptions: Sequence[CouponRedemption],
    ) -> None:
        """
        Atomic checkout: insert the order and its items, move every cart hold
        to the order, mark the cart converted, record coupon redemptions and
        append the order_created event.
        Refused with ValidationError when the stored cart is no longer active
        or its version differs from `cart.version`.
        """
        ...

    def save(self, order: Order, events: Sequence[OrderEvent]) -> None: ...

    def settle_payment(self, order: Order, event: OrderEvent) -> None:
        """Atomically consume every held unit of the order and save the paid order."""
        ...

    def cancel(self, order: Order, event: OrderEvent) -> None:
        """Atomically release every hold of the order and save the cancelled order."""
        ...
