"""
Domain: Inventory ledger entities.

Contract implemented here:
- One InventoryRecord per listing; `quantity_available` and `quantity_reserved`
  are never negative and reserved never exceeds available.
- available_to_purchase = quantity_available - quantity_reserved.
- Records are only changed through the transitions below. Each transition
  returns the new record together with exactly one InventoryTransaction.
- The transaction log is append-only. Replaying it reproduces the record:
    quantity_reserved  = Σ reserved_change
    quantity_available = Σ quantity_change + Σ reserved_change
  where quantity_change is the signed change to available-to-purchase.

This module contains only pure domain entities/value objects: no I/O, no database, no frameworks.
All timestamps must be passed explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Tuple
from uuid import UUID, uuid4

from .errors import InsufficientStockError, InvariantViolationError, ValidationError
from .time import require_utc_timestamp


class TransactionType(str, Enum):
    RESERVATION = "reservation"
    RESTOCK = "restock"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
    SALE = "sale"


class StockStatus(str, Enum):
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


@dataclass(frozen=True, slots=True)
class InventoryTransaction:
    """Immutable audit entry paired with one InventoryRecord mutation."""

    transaction_id: UUID
    inventory_id: UUID
    listing_id: UUID
    transaction_type: TransactionType
    quantity_change: int
    reserved_change: int
    created_at: datetime
    cart_id: Optional[UUID] = None
    order_id: Optional[UUID] = None
    created_by: Optional[UUID] = None
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)


@dataclass(frozen=True, slots=True)
class InventoryHold:
    """Quantity of one listing currently reserved by one cart or order."""

    listing_id: UUID
    holder_id: UUID
    quantity: int


@dataclass(frozen=True, slots=True)
class InventoryRecord:
    inventory_id: UUID
    listing_id: UUID
    quantity_available: int
    quantity_reserved: int
    created_at: datetime
    updated_at: datetime
    restock_threshold: Optional[int] = None
    sku: Optional[str] = None
    last_restock_date: Optional[datetime] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        require_utc_timestamp("updated_at", self.updated_at)
        if self.last_restock_date is not None:
            require_utc_timestamp("last_restock_date", self.last_restock_date)

    @property
    def available_to_purchase(self) -> int:
        return self.quantity_available - self.quantity_reserved

    @property
    def stock_status(self) -> StockStatus:
        available = self.available_to_purchase
        if available <= 0:
            return StockStatus.OUT_OF_STOCK
        if self.restock_threshold is not None and available <= self.restock_threshold:
            return StockStatus.LOW_STOCK
        return StockStatus.IN_STOCK

    def check_invariants(self) -> None:
        """Ledger corruption is fatal: it is reported, never repaired."""

        if self.quantity_available < 0 or self.quantity_reserved < 0:
            raise InvariantViolationError(
                f"Inventory for listing {self.listing_id} has negative quantities "
                f"(available={self.quantity_available}, reserved={self.quantity_reserved})"
            )
        if self.quantity_reserved > self.quantity_available:
            raise InvariantViolationError(
                f"Inventory for listing {self.listing_id} has reserved "
                f"{self.quantity_reserved} > available {self.quantity_available}"
            )

    def _transaction(
        self,
        *,
        transaction_type: TransactionType,
        quantity_change: int,
        reserved_change: int,
        at: datetime,
        cart_id: Optional[UUID] = None,
        order_id: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
        notes: Optional[str] = None,
    ) -> InventoryTransaction:
        return InventoryTransaction(
            transaction_id=uuid4(),
            inventory_id=self.inventory_id,
            listing_id=self.listing_id,
            transaction_type=transaction_type,
            quantity_change=quantity_change,
            reserved_change=reserved_change,
            created_at=at,
            cart_id=cart_id,
            order_id=order_id,
            created_by=created_by,
            notes=notes,
        )

    def reserve(
        self, quantity: int, *, cart_id: UUID, at: datetime
    ) -> Tuple["InventoryRecord", InventoryTransaction]:
        """Hold `quantity` units for a cart if enough stock is free."""

        _require_positive("quantity", quantity)
        if self.available_to_purchase < quantity:
            raise InsufficientStockError(self.listing_id, quantity, self.available_to_purchase)
        updated = replace(self, quantity_reserved=self.quantity_reserved + quantity, updated_at=at)
        return updated, self._transaction(
            transaction_type=TransactionType.RESERVATION,
            quantity_change=-quantity,
            reserved_change=quantity,
            at=at,
            cart_id=cart_id,
        )

    def release(
        self,
        quantity: int,
        *,
        at: datetime,
        cart_id: Optional[UUID] = None,
        order_id: Optional[UUID] = None,
    ) -> Tuple["InventoryRecord", InventoryTransaction]:
        """Return held units to the purchasable pool. Never drives reserved below zero."""

        _require_positive("quantity", quantity)
        released = min(quantity, self.quantity_reserved)
        updated = replace(self, quantity_reserved=self.quantity_reserved - released, updated_at=at)
        return updated, self._transaction(
            transaction_type=TransactionType.RESERVATION,
            quantity_change=released,
            reserved_change=-released,
            at=at,
            cart_id=cart_id,
            order_id=order_id,
        )

    def commit(
        self, quantity: int, *, order_id: UUID, at: datetime
    ) -> Tuple["InventoryRecord", InventoryTransaction]:
        """Turn a held reservation into a sale: both pools shrink by `quantity`."""

        _require_positive("quantity", quantity)
        if self.quantity_reserved < quantity:
            raise InvariantViolationError(
                f"Cannot consume {quantity} of listing {self.listing_id}: "
                f"only {self.quantity_reserved} reserved"
            )
        updated = replace(
            self,
            quantity_available=self.quantity_available - quantity,
            quantity_reserved=self.quantity_reserved - quantity,
            updated_at=at,
        )
        return updated, self._transaction(
            transaction_type=TransactionType.SALE,
            quantity_change=0,
            reserved_change=-quantity,
            at=at,
            order_id=order_id,
        )

    def adjust(
        self,
        new_available: int,
        *,
        at: datetime,
        created_by: Optional[UUID] = None,
        notes: Optional[str] = None,
    ) -> Tuple["InventoryRecord", Optional[InventoryTransaction]]:
        """
        Set quantity_available to an absolute value.

        Returns (record, None) when nothing changes. Stock below what is
        currently reserved cannot be set: reservations would exceed supply.
        """

        if new_available < 0:
            raise ValidationError("quantity_available must be >= 0")
        if new_available < self.quantity_reserved:
            raise ValidationError(
                f"quantity_available cannot be lower than the {self.quantity_reserved} units currently reserved"
            )
        delta = new_available - self.quantity_available
        if delta == 0:
            return self, None
        updated = replace(
            self,
            quantity_available=new_available,
            updated_at=at,
            last_restock_date=at if delta > 0 else self.last_restock_date,
        )
        return updated, self._transaction(
            transaction_type=TransactionType.RESTOCK if delta > 0 else TransactionType.ADJUSTMENT,
            quantity_change=delta,
            reserved_change=0,
            at=at,
            created_by=created_by,
            notes=notes or "Manual inventory update",
        )

    def add_returned(
        self,
        quantity: int,
        *,
        at: datetime,
        order_id: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
    ) -> Tuple["InventoryRecord", InventoryTransaction]:
        """Put returned goods back on the shelf."""

        _require_positive("quantity", quantity)
        updated = replace(self, quantity_available=self.quantity_available + quantity, updated_at=at)
        return updated, self._transaction(
            transaction_type=TransactionType.RETURN,
            quantity_change=quantity,
            reserved_change=0,
            at=at,
            order_id=order_id,
            created_by=created_by,
            notes="Returned goods restocked",
        )


def new_inventory_record(
    *,
    listing_id: UUID,
    quantity_available: int,
    at: datetime,
    restock_threshold: Optional[int] = None,
    sku: Optional[str] = None,
    created_by: Optional[UUID] = None,
) -> Tuple[InventoryRecord, Optional[InventoryTransaction]]:
    """
    Create an empty record and apply the opening stock as a restock so the
    transaction log alone reproduces the record.
    """

    if quantity_available < 0:
        raise ValidationError("quantity_available must be >= 0")
    if restock_threshold is not None and restock_threshold < 0:
        raise ValidationError("restock_threshold must be >= 0")
    empty = InventoryRecord(
        inventory_id=uuid4(),
        listing_id=listing_id,
        quantity_available=0,
        quantity_reserved=0,
        created_at=at,
        updated_at=at,
        restock_threshold=restock_threshold,
        sku=sku,
    )
    if quantity_available == 0:
        return empty, None
    return empty.adjust(quantity_available, at=at, created_by=created_by, notes="Initial inventory setup")


@dataclass(frozen=True, slots=True)
class LedgerBalance:
    quantity_available: int
    quantity_reserved: int


def replay_transactions(transactions: Iterable[InventoryTransaction]) -> LedgerBalance:
    """Rebuild a record's quantities from its transaction log."""

    net_change = 0
    reserved = 0
    for txn in transactions:
        net_change += txn.quantity_change
        reserved += txn.reserved_change
        if reserved < 0:
            raise InvariantViolationError(
                f"Transaction {txn.transaction_id} drives reserved quantity below zero"
            )
    return LedgerBalance(quantity_available=net_change + reserved, quantity_reserved=reserved)


def _require_positive(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer")
