"""
In-memory repositories.

All tables live in one `InMemoryDatabase`. Every public method takes the
database's re-entrant lock, so concurrent callers are serialised per call, and
multi-row operations run inside `atomic()`, which restores the previous table
contents if anything raises. Domain objects are immutable, so a shallow copy of
each table is a complete snapshot.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from uuid import UUID

from domain.cart import STALE_CART_MESSAGE, Cart, CartEvent, CartStatus
from domain.coupon import Coupon, CouponRedemption, normalize_code
from domain.errors import InvariantViolationError, NotFoundError, ValidationError
from domain.inventory import InventoryHold, InventoryRecord, InventoryTransaction
from domain.listing import Listing, Store
from domain.order import Order, OrderEvent, OrderStatus, PaymentStatus
from domain.shipping import RateCacheEntry

_TABLES = (
    "listings",
    "stores",
    "inventory",
    "inventory_transactions",
    "holds",
    "carts",
    "cart_events",
    "coupons",
    "redemptions",
    "rate_cache",
    "orders",
    "order_events",
)


class InMemoryDatabase:
    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.listings: Dict[UUID, Listing] = {}
        self.stores: Dict[UUID, Store] = {}
        self.inventory: Dict[UUID, InventoryRecord] = {}
        self.inventory_transactions: List[InventoryTransaction] = []
        self.holds: Dict[Tuple[UUID, UUID], int] = {}
        self.carts: Dict[UUID, Cart] = {}
        self.cart_events: List[CartEvent] = []
        self.coupons: Dict[UUID, Coupon] = {}
        self.redemptions: List[CouponRedemption] = []
        self.rate_cache: Dict[str, List[RateCacheEntry]] = {}
        self.orders: Dict[UUID, Order] = {}
        self.order_events: List[OrderEvent] = []

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self.lock:
            snapshot: Dict[str, Any] = {name: copy.copy(getattr(self, name)) for name in _TABLES}
            try:
                yield
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                raise


class MemoryListingRepository:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    def add_store(self, store: Store) -> Store:
        with self._db.lock:
            self._db.stores[store.store_id] = store
        return store

    def add_listing(self, listing: Listing) -> Listing:
        with self._db.lock:
            self._db.listings[listing.listing_id] = listing
        return listing

    def get_listing(self, listing_id: UUID) -> Optional[Listing]:
        with self._db.lock:
            return self._db.listings.get(listing_id)

    def get_store(self, store_id: UUID) -> Optional[Store]:
        with self._db.lock:
            return self._db.stores.get(store_id)

    def list_for_store(self, store_id: UUID) -> List[Listing]:
        with self._db.lock:
            return [listing for listing in self._db.listings.values() if listing.store_id == store_id]


class MemoryInventoryRepository:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    def _require(self, listing_id: UUID) -> InventoryRecord:
        record = self._db.inventory.get(listing_id)
        if record is None:
            raise NotFoundError("Inventory", listing_id)
        return record

    def _apply(self, record: InventoryRecord, transaction: Optional[InventoryTransaction]) -> InventoryRecord:
        record.check_invariants()
        self._db.inventory[record.listing_id] = record
        if transaction is not None:
            self._db.inventory_transactions.append(transaction)
        return record

    def _add_hold(self, listing_id: UUID, holder_id: UUID, delta: int) -> None:
        key = (listing_id, holder_id)
        remaining = self._db.holds.get(key, 0) + delta
        if remaining < 0:
            raise InvariantViolationError(f"Hold of {holder_id} on listing {listing_id} would go negative")
        if remaining == 0:
            self._db.holds.pop(key, None)
        else:
            self._db.holds[key] = remaining

    def get_record(self, listing_id: UUID) -> Optional[InventoryRecord]:
        with self._db.lock:
            return self._db.inventory.get(listing_id)

    def create(self, record: InventoryRecord, transaction: Optional[InventoryTransaction]) -> InventoryRecord:
        with self._db.atomic():
            if record.listing_id in self._db.inventory:
                raise ValidationError("Inventory already exists for this listing")
            return self._apply(record, transaction)

    def reserve(self, listing_id: UUID, quantity: int, *, cart_id: UUID, at: datetime) -> InventoryRecord:
        with self._db.atomic():
            record, transaction = self._require(listing_id).reserve(quantity, cart_id=cart_id, at=at)
            self._add_hold(listing_id, cart_id, quantity)
            return self._apply(record, transaction)

    def release(self, listing_id: UUID, quantity: int, *, holder_id: UUID, at: datetime) -> int:
        with self._db.atomic():
            held = self._db.holds.get((listing_id, holder_id), 0)
            amount = min(quantity, held)
            if amount <= 0:
                return 0
            current = self._require(listing_id)
            if holder_id in self._db.orders:
                record, transaction = current.release(amount, at=at, order_id=holder_id)
            else:
                record, transaction = current.release(amount, at=at, cart_id=holder_id)
            released = -transaction.reserved_change
            self._add_hold(listing_id, holder_id, -released)
            self._apply(record, transaction)
            return released

    def transfer_hold(
        self, listing_id: UUID, quantity: int, *, cart_id: UUID, order_id: UUID, at: datetime
    ) -> None:
        with self._db.atomic():
            held = self._db.holds.get((listing_id, cart_id), 0)
            if held < quantity:
                raise InvariantViolationError(
                    f"Cart {cart_id} holds {held} of listing {listing_id} but checkout needs {quantity}"
                )
            self._add_hold(listing_id, cart_id, -quantity)
            self._add_hold(listing_id, order_id, quantity)

    def commit(self, listing_id: UUID, quantity: int, *, order_id: UUID, at: datetime) -> InventoryRecord:
        with self._db.atomic():
            held = self._db.holds.get((listing_id, order_id), 0)
            if held < quantity:
                raise InvariantViolationError(
                    f"Order {order_id} holds {held} of listing {listing_id} but needs {quantity}"
                )
            record, transaction = self._require(listing_id).commit(quantity, order_id=order_id, at=at)
            self._add_hold(listing_id, order_id, -quantity)
            return self._apply(record, transaction)

    def adjust(
        self,
        listing_id: UUID,
        new_available: int,
        *,
        at: datetime,
        created_by: Optional[UUID],
        notes: Optional[str],
    ) -> InventoryRecord:
        with self._db.atomic():
            record, transaction = self._require(listing_id).adjust(
                new_available, at=at, created_by=created_by, notes=notes
            )
            return self._apply(record, transaction)

    def return_stock(
        self, listing_id: UUID, quantity: int, *, order_id: UUID, created_by: Optional[UUID], at: datetime
    ) -> InventoryRecord:
        with self._db.atomic():
            record, transaction = self._require(listing_id).add_returned(
                quantity, at=at, order_id=order_id, created_by=created_by
            )
            return self._apply(record, transaction)

    def get_hold(self, listing_id: UUID, holder_id: UUID) -> int:
        with self._db.lock:
            return self._db.holds.get((listing_id, holder_id), 0)

    def list_holds(self, holder_id: UUID) -> List[InventoryHold]:
        with self._db.lock:
            return [
                InventoryHold(listing_id=listing_id, holder_id=holder, quantity=quantity)
                for (listing_id, holder), quantity in self._db.holds.items()
                if holder == holder_id
            ]

    def list_transactions(self, listing_id: UUID) -> List[InventoryTransaction]:
        with self._db.lock:
            return [t for t in self._db.inventory_transactions if t.listing_id == listing_id]

    def list_records(self, listing_ids: Iterable[UUID]) -> List[InventoryRecord]:
        with self._db.lock:
            return [self._db.inventory[i] for i in listing_ids if i in self._db.inventory]

    def list_listing_ids(self) -> List[UUID]:
        with self._db.lock:
            return list(self._db.inventory)


class MemoryCartRepository:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    def get(self, cart_id: UUID) -> Optional[Cart]:
        with self._db.lock:
            return self._db.carts.get(cart_id)

    def find_active(self, *, account_id: Optional[UUID], device_id: Optional[str]) -> Optional[Cart]:
        with self._db.lock:
            for cart in self._db.carts.values():
                if cart.status != CartStatus.ACTIVE:
                    continue
                if account_id is not None and cart.account_id == account_id:
                    return cart
                if account_id is None and device_id is not None and cart.device_id == device_id:
                    return cart
            return None

    def save(self, cart: Cart, events: Sequence[CartEvent]) -> Cart:
        with self._db.atomic():
            existing = self._db.carts.get(cart.cart_id)
            if existing is not None and existing.status == CartStatus.CONVERTED:
                raise ValidationError("Cart is converted and can no longer be changed")
            stored_version = existing.version if existing is not None else 0
            if cart.version != stored_version:
                raise ValidationError(STALE_CART_MESSAGE)
            if existing is None and cart.status == CartStatus.ACTIVE:
                if self.find_active(account_id=cart.account_id, device_id=cart.device_id) is not None:
                    raise ValidationError("An active cart already exists for this customer")
            stored = replace(cart, version=stored_version + 1)
            self._db.carts[cart.cart_id] = stored
            self._db.cart_events.extend(events)
            return stored

    def list_events(self, cart_id: UUID) -> List[CartEvent]:
        with self._db.lock:
            return [e for e in self._db.cart_events if e.cart_id == cart_id]

    def list_expired(self, now: datetime) -> List[Cart]:
        with self._db.lock:
            return [c for c in self._db.carts.values() if c.is_active and c.is_expired(now)]


class MemoryCouponRepository:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    def add(self, coupon: Coupon) -> Coupon:
        coupon = replace(coupon, code=normalize_code(coupon.code))
        with self._db.lock:
            self._db.coupons[coupon.coupon_id] = coupon
        return coupon

    def get_by_code(self, code: str) -> Optional[Coupon]:
        wanted = normalize_code(code)
        with self._db.lock:
            for coupon in self._db.coupons.values():
                if coupon.code == wanted:
                    return coupon
            return None

    def get_many(self, coupon_ids: Iterable[UUID]) -> Dict[UUID, Coupon]:
        with self._db.lock:
            return {cid: self._db.coupons[cid] for cid in coupon_ids if cid in self._db.coupons}

    def count_redemptions(self, coupon_id: UUID, customer_key: str) -> int:
        with self._db.lock:
            return sum(
                1 for r in self._db.redemptions if r.coupon_id == coupon_id and r.customer_key == customer_key
            )


class MemoryRateCacheRepository:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    def get_valid(self, cache_key: str, now: datetime) -> List[RateCacheEntry]:
        with self._db.lock:
            return [e for e in self._db.rate_cache.get(cache_key, []) if e.is_valid(now)]

    def replace(self, cache_key: str, entries: Sequence[RateCacheEntry]) -> None:
        with self._db.lock:
            self._db.rate_cache[cache_key] = list(entries)


class MemoryOrderRepository:
    def __init__(self, db: InMemoryDatabase, inventory: MemoryInventoryRepository) -> None:
        self._db = db
        self._inventory = inventory

    def get(self, order_id: UUID) -> Optional[Order]:
        with self._db.lock:
            return self._db.orders.get(order_id)

    def find_by_payment_intent(self, intent_id: str) -> Optional[Order]:
        with self._db.lock:
            for order in self._db.orders.values():
                if order.has_payment_intent(intent_id):
                    return order
            return None

    def find_by_refund(self, refund_id: UUID) -> Optional[Order]:
        with self._db.lock:
            for order in self._db.orders.values():
                if any(r.refund_id == refund_id for r in order.refunds):
                    return order
            return None

    def list_events(self, order_id: UUID) -> List[OrderEvent]:
        with self._db.lock:
            return [e for e in self._db.order_events if e.order_id == order_id]

    def list_unpaid_created_before(self, cutoff: datetime) -> List[Order]:
        with self._db.lock:
            return [
                o
                for o in self._db.orders.values()
                if o.payment_status in (PaymentStatus.UNPAID, PaymentStatus.PENDING)
                and o.status in (OrderStatus.PENDING, OrderStatus.ON_HOLD)
                and o.created_at < cutoff
            ]

    def list_for_store(self, store_id: UUID, status: Optional[OrderStatus] = None) -> List[Order]:
        with self._db.lock:
            orders = [
                o for o in self._db.orders.values() if o.store_id == store_id and (status is None or o.status == status)
            ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def list_for_customer(self, *, account_id: Optional[UUID], device_id: Optional[str]) -> List[Order]:
        with self._db.lock:
            if account_id is not None:
                orders = [o for o in self._db.orders.values() if o.account_id == account_id]
            elif device_id:
                orders = [o for o in self._db.orders.values() if o.account_id is None and o.device_id == device_id]
            else:
                orders = []
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def create_from_cart(
        self,
        order: Order,
        event: OrderEvent,
        cart: Cart,
        redemptions: Sequence[CouponRedemption],
    ) -> None:
        with self._db.atomic():
            current = self._db.carts.get(cart.cart_id)
            if current is None or current.status != CartStatus.ACTIVE:
                raise ValidationError("Cart is no longer active")
            if current.version != cart.version:
                raise ValidationError("Cart changed during checkout; review it and try again")
            self._db.orders[order.order_id] = order
            for item in order.items:
                self._inventory.transfer_hold(
                    item.listing_id, item.quantity, cart_id=cart.cart_id, order_id=order.order_id, at=event.created_at
                )
            converted = cart.with_status(CartStatus.CONVERTED, at=event.created_at)
            self._db.carts[cart.cart_id] = replace(converted, version=cart.version + 1)
            self._db.redemptions.extend(redemptions)
            self._db.order_events.append(event)

    def save(self, order: Order, events: Sequence[OrderEvent]) -> None:
        with self._db.atomic():
            if order.order_id not in self._db.orders:
                raise NotFoundError("Order", order.order_id)
            self._db.orders[order.order_id] = order
            self._db.order_events.extend(events)

    def settle_payment(self, order: Order, event: OrderEvent) -> None:
        with self._db.atomic():
            for item in order.items:
                self._inventory.commit(item.listing_id, item.quantity, order_id=order.order_id, at=event.created_at)
            self.save(order, [event])

    def cancel(self, order: Order, event: OrderEvent) -> None:
        with self._db.atomic():
            for hold in self._inventory.list_holds(order.order_id):
                self._inventory.release(
                    hold.listing_id, hold.quantity, holder_id=order.order_id, at=event.created_at
                )
            self.save(order, [event])
