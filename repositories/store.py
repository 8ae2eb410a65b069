"""
Repository bundle.

`DataStore` groups one repository per aggregate so services receive a single
object. `build_memory_store` backs it with `repositories.memory`;
`build_supabase_store` with the Supabase repositories.

`transaction()` brackets one service operation. The memory store takes the
database lock for the whole operation and rolls every table back if it
raises. Supabase has no client-side transaction: each PL/pgSQL call is atomic
on its own, and cart saves are guarded by the cart version instead.
"""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Callable, ContextManager, Optional

from repositories.base import (
    CartRepository,
    CouponRepository,
    InventoryRepository,
    ListingRepository,
    OrderRepository,
    RateCacheRepository,
)


@dataclass
class DataStore:
    listings: ListingRepository
    inventory: InventoryRepository
    carts: CartRepository
    coupons: CouponRepository
    rate_cache: RateCacheRepository
    orders: OrderRepository
    transaction: Callable[[], ContextManager[Any]] = nullcontext


def build_memory_store() -> DataStore:
    from repositories.memory import (
        InMemoryDatabase,
        MemoryCartRepository,
        MemoryCouponRepository,
        MemoryInventoryRepository,
        MemoryListingRepository,
        MemoryOrderRepository,
        MemoryRateCacheRepository,
    )

    db = InMemoryDatabase()
    inventory = MemoryInventoryRepository(db)
    return DataStore(
        listings=MemoryListingRepository(db),
        inventory=inventory,
        carts=MemoryCartRepository(db),
        coupons=MemoryCouponRepository(db),
        rate_cache=MemoryRateCacheRepository(db),
        orders=MemoryOrderRepository(db, inventory),
        transaction=db.atomic,
    )


def build_supabase_store(client: Optional[object] = None, *, timeout_seconds: float = 10) -> DataStore:
    from repositories.cart_repository import SupabaseCartRepository
    from repositories.client import get_supabase
    from repositories.coupon_repository import SupabaseCouponRepository
    from repositories.inventory_repository import SupabaseInventoryRepository
    from repositories.listing_repository import SupabaseListingRepository
    from repositories.order_repository import SupabaseOrderRepository
    from repositories.shipping_rate_repository import SupabaseRateCacheRepository

    client = client or get_supabase(timeout_seconds)
    return DataStore(
        listings=SupabaseListingRepository(client),
        inventory=SupabaseInventoryRepository(client),
        carts=SupabaseCartRepository(client),
        coupons=SupabaseCouponRepository(client),
        rate_cache=SupabaseRateCacheRepository(client),
        orders=SupabaseOrderRepository(client),
    )
