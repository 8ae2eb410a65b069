"""
Inventory repository (persistence).

This module provides *only* persistence operations for the inventory ledger.
Every change to an inventory row goes through one of the PL/pgSQL functions in
`sql/functions.sql`, which lock the row (`FOR UPDATE`), check the condition,
update the row, the per-holder hold and the transaction log in one database
transaction. Quantity rules live in the database function and mirror
`domain.inventory`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional
from uuid import UUID

from supabase import Client

from domain.inventory import InventoryHold, InventoryRecord, InventoryTransaction, TransactionType
from repositories.rpc import call_atomic
from repositories.serialization import (
    optional_datetime,
    optional_iso_utc,
    optional_uuid,
    parse_utc_datetime,
    to_iso_utc,
    uuid_str,
)

# Supabase table names for the ledger.
# Keep these aligned with sql/schema.sql.
_INVENTORY_TABLE: str = "inventory"
_TRANSACTIONS_TABLE: str = "inventory_transactions"
_HOLDS_TABLE: str = "inventory_holds"


def _row_to_inventory(row: Mapping[str, Any]) -> InventoryRecord:
    """Convert a Supabase row into an InventoryRecord."""

    return InventoryRecord(
        inventory_id=UUID(str(row["id"])),
        listing_id=UUID(str(row["listing_id"])),
        quantity_available=int(row["quantity_available"]),
        quantity_reserved=int(row["quantity_reserved"]),
        created_at=parse_utc_datetime(row["created_at"]),
        updated_at=parse_utc_datetime(row["updated_at"]),
        restock_threshold=int(row["restock_threshold"]) if row.get("restock_threshold") is not None else None,
        sku=row.get("sku"),
        last_restock_date=optional_datetime(row.get("last_restock_date")),
    )


def _row_to_transaction(row: Mapping[str, Any]) -> InventoryTransaction:
    return InventoryTransaction(
        transaction_id=UUID(str(row["id"])),
        inventory_id=UUID(str(row["inventory_id"])),
        listing_id=UUID(str(row["listing_id"])),
        transaction_type=TransactionType(str(row["transaction_type"])),
        quantity_change=int(row["quantity_change"]),
        reserved_change=int(row["reserved_change"]),
        created_at=parse_utc_datetime(row["created_at"]),
        cart_id=optional_uuid(row.get("cart_id")),
        order_id=optional_uuid(row.get("order_id")),
        created_by=optional_uuid(row.get("created_by")),
        notes=row.get("notes"),
    )


def _transaction_payload(txn: InventoryTransaction) -> dict[str, Any]:
    return {
        "id": str(txn.transaction_id),
        "inventory_id": str(txn.inventory_id),
        "listing_id": str(txn.listing_id),
        "transaction_type": txn.transaction_type.value,
        "quantity_change": txn.quantity_change,
        "reserved_change": txn.reserved_change,
        "cart_id": uuid_str(txn.cart_id),
        "order_id": uuid_str(txn.order_id),
        "created_by": uuid_str(txn.created_by),
        "notes": txn.notes,
        "created_at": to_iso_utc(txn.created_at, name="created_at"),
    }


class SupabaseInventoryRepository:
    def __init__(self, client: Client) -> None:
        self._client = client

    def get_record(self, listing_id: UUID) -> Optional[InventoryRecord]:
        response = (
            self._client.table(_INVENTORY_TABLE)
            .select("*")
            .eq("listing_id", str(listing_id))
            .limit(1)
            .execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to get inventory: {error}")

        rows = getattr(response, "data", None) or []
        return _row_to_inventory(rows[0]) if rows else None

    def create(self, record: InventoryRecord, transaction: Optional[InventoryTransaction]) -> InventoryRecord:
        result = call_atomic(
            self._client,
            "create_inventory",
            {
                "p_record": {
                    "id": str(record.inventory_id),
                    "listing_id": str(record.listing_id),
                    "quantity_available": record.quantity_available,
                    "quantity_reserved": record.quantity_reserved,
                    "restock_threshold": record.restock_threshold,
                    "sku": record.sku,
                    "last_restock_date": optional_iso_utc(record.last_restock_date, name="last_restock_date"),
                    "created_at": to_iso_utc(record.created_at, name="created_at"),
                    "updated_at": to_iso_utc(record.updated_at, name="updated_at"),
                },
                "p_transaction": _transaction_payload(transaction) if transaction is not None else None,
            },
        )
        return _row_to_inventory(result["inventory"])

    def reserve(self, listing_id: UUID, quantity: int, *, cart_id: UUID, at: datetime) -> InventoryRecord:
        result = call_atomic(
            self._client,
            "reserve_inventory",
            {
                "p_listing_id": str(listing_id),
                "p_quantity": quantity,
                "p_cart_id": str(cart_id),
                "p_at": to_iso_utc(at, name="at"),
            },
        )
        return _row_to_inventory(result["inventory"])

    def release(self, listing_id: UUID, quantity: int, *, holder_id: UUID, at: datetime) -> int:
        result = call_atomic(
            self._client,
            "release_inventory",
            {
                "p_listing_id": str(listing_id),
                "p_quantity": quantity,
                "p_holder_id": str(holder_id),
                "p_at": to_iso_utc(at, name="at"),
            },
        )
        return int(result.get("released", 0))

    def transfer_hold(
        self, listing_id: UUID, quantity: int, *, cart_id: UUID, order_id: UUID, at: datetime
    ) -> None:
        call_atomic(
            self._client,
            "transfer_inventory_hold",
            {
                "p_listing_id": str(listing_id),
                "p_quantity": quantity,
                "p_cart_id": str(cart_id),
                "p_order_id": str(order_id),
            },
        )

    def commit(self, listing_id: UUID, quantity: int, *, order_id: UUID, at: datetime) -> InventoryRecord:
        result = call_atomic(
            self._client,
            "commit_inventory_consumption",
            {
                "p_listing_id": str(listing_id),
                "p_quantity": quantity,
                "p_order_id": str(order_id),
                "p_at": to_iso_utc(at, name="at"),
            },
        )
        return _row_to_inventory(result["inventory"])

    def adjust(
        self,
        listing_id: UUID,
        new_available: int,
        *,
        at: datetime,
        created_by: Optional[UUID],
        notes: Optional[str],
    ) -> InventoryRecord:
        result = call_atomic(
            self._client,
            "adjust_inventory",
            {
                "p_listing_id": str(listing_id),
                "p_new_available": new_available,
                "p_created_by": uuid_str(created_by),
                "p_notes": notes,
                "p_at": to_iso_utc(at, name="at"),
            },
        )
        return _row_to_inventory(result["inventory"])

    def return_stock(
        self, listing_id: UUID, quantity: int, *, order_id: UUID, created_by: Optional[UUID], at: datetime
    ) -> InventoryRecord:
        result = call_atomic(
            self._client,
            "return_inventory",
            {
                "p_listing_id": str(listing_id),
                "p_quantity": quantity,
                "p_order_id": str(order_id),
                "p_created_by": uuid_str(created_by),
                "p_at": to_iso_utc(at, name="at"),
            },
        )
        return _row_to_inventory(result["inventory"])

    def get_hold(self, listing_id: UUID, holder_id: UUID) -> int:
        response = (
            self._client.table(_HOLDS_TABLE)
            .select("quantity")
            .eq("listing_id", str(listing_id))
            .eq("holder_id", str(holder_id))
            .limit(1)
            .execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to get inventory hold: {error}")

        rows = getattr(response, "data", None) or []
        return int(rows[0]["quantity"]) if rows else 0

    def list_holds(self, holder_id: UUID) -> List[InventoryHold]:
        response = self._client.table(_HOLDS_TABLE).select("*").eq("holder_id", str(holder_id)).execute()
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to list inventory holds: {error}")

        rows = getattr(response, "data", None) or []
        return [
            InventoryHold(
                listing_id=UUID(str(row["listing_id"])),
                holder_id=UUID(str(row["holder_id"])),
                quantity=int(row["quantity"]),
            )
            for row in rows
        ]

    def list_transactions(self, listing_id: UUID) -> List[InventoryTransaction]:
        response = (
            self._client.table(_TRANSACTIONS_TABLE)
            .select("*")
            .eq("listing_id", str(listing_id))
            .order("created_at")
            .execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to list inventory transactions: {error}")

        rows = getattr(response, "data", None) or []
        return [_row_to_transaction(row) for row in rows]

    def list_records(self, listing_ids: Iterable[UUID]) -> List[InventoryRecord]:
        ids = [str(listing_id) for listing_id in listing_ids]
        if not ids:
            return []
        response = self._client.table(_INVENTORY_TABLE).select("*").in_("listing_id", ids).execute()
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to list inventory records: {error}")

        rows = getattr(response, "data", None) or []
        return [_row_to_inventory(row) for row in rows]

    def list_listing_ids(self) -> List[UUID]:
        response = self._client.table(_INVENTORY_TABLE).select("listing_id").execute()
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to list inventory: {error}")

        rows = getattr(response, "data", None) or []
        return [UUID(str(row["listing_id"])) for row in rows]
