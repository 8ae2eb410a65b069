"""
Listing repository (read-only access to the catalog).

Listings and stores are owned by the catalog service; this engine only reads
them.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, List, Mapping, Optional
from uuid import UUID

from supabase import Client

from domain.listing import Address, Dimensions, Listing, ListingStatus, Store
from repositories.serialization import money, optional_decimal

_LISTINGS_TABLE: str = "listings"
_STORES_TABLE: str = "stores"


def _row_to_listing(row: Mapping[str, Any]) -> Listing:
    dimensions = None
    if row.get("length") is not None and row.get("width") is not None and row.get("height") is not None:
        dimensions = Dimensions(
            length=Decimal(str(row["length"])),
            width=Decimal(str(row["width"])),
            height=Decimal(str(row["height"])),
            unit=str(row.get("dimension_unit") or "in"),
        )
    return Listing(
        listing_id=UUID(str(row["id"])),
        store_id=UUID(str(row["store_id"])),
        title=str(row["title"]),
        price=money(row["price"]),
        status=ListingStatus(str(row.get("status") or "active")),
        is_deleted=bool(row.get("is_deleted", False)),
        is_digital=bool(row.get("is_digital", False)),
        weight=optional_decimal(row.get("weight")),
        dimensions=dimensions,
    )


def _row_to_store(row: Mapping[str, Any]) -> Store:
    return Store(
        store_id=UUID(str(row["id"])),
        owner_id=UUID(str(row["owner_id"])),
        name=str(row["name"]),
        origin=Address(
            postal_code=str(row["origin_postal_code"]),
            country=str(row.get("origin_country") or "US"),
            city=row.get("origin_city"),
            state=row.get("origin_state"),
        ),
    )


class SupabaseListingRepository:
    def __init__(self, client: Client) -> None:
        self._client = client

    def get_listing(self, listing_id: UUID) -> Optional[Listing]:
        response = (
            self._client.table(_LISTINGS_TABLE).select("*").eq("id", str(listing_id)).limit(1).execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to get listing: {error}")

        rows = getattr(response, "data", None) or []
        return _row_to_listing(rows[0]) if rows else None

    def get_store(self, store_id: UUID) -> Optional[Store]:
        response = self._client.table(_STORES_TABLE).select("*").eq("id", str(store_id)).limit(1).execute()
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to get store: {error}")

        rows = getattr(response, "data", None) or []
        return _row_to_store(rows[0]) if rows else None

    def list_for_store(self, store_id: UUID) -> List[Listing]:
        response = self._client.table(_LISTINGS_TABLE).select("*").eq("store_id", str(store_id)).execute()
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to list store listings: {error}")

        rows = getattr(response, "data", None) or []
        return [_row_to_listing(row) for row in rows]
