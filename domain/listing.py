"""
Domain: Listings, stores and addresses.

Listings are owned by the catalog; this engine only reads them to validate that
an item is purchasable, to snapshot its price into a cart, and to size parcels.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID


class ListingStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    SOLD_OUT = "sold_out"
    ARCHIVED = "archived"


@dataclass(frozen=True, slots=True)
class Dimensions:
    length: Decimal
    width: Decimal
    height: Decimal
    unit: str = "in"


@dataclass(frozen=True, slots=True)
class Address:
    postal_code: str
    country: str = "US"
    name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Store:
    store_id: UUID
    owner_id: UUID
    name: str
    origin: Address


@dataclass(frozen=True, slots=True)
class Listing:
    listing_id: UUID
    store_id: UUID
    title: str
    price: Decimal
    status: ListingStatus = ListingStatus.ACTIVE
    is_deleted: bool = False
    is_digital: bool = False
    weight: Optional[Decimal] = None
    dimensions: Optional[Dimensions] = None

    def is_purchasable(self) -> bool:
        """Published and not deleted. Stock is checked against the ledger separately."""
        return self.status == ListingStatus.ACTIVE and not self.is_deleted
