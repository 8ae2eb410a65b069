"""
Inventory ledger service.

Handles:
- Reservations held by carts, and their release
- Hand-off of holds from a cart to the order created from it
- Consumption of held stock once an order is paid
- Store-owner stock changes (restock, adjustment, returned goods)
- Reconciliation of every record against its transaction log
- The low-stock report of a store

Atomicity of each check-then-write lives in the repository (one locked
database function, or one in-memory critical section); this service adds
validation, ownership checks and logging.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID

from domain.actor import ActorContext
from domain.errors import InsufficientStockError, InvariantViolationError, NotFoundError, ValidationError
from domain.inventory import InventoryRecord, LedgerBalance, StockStatus, new_inventory_record, replay_transactions
from domain.time import Clock, utc_now
from repositories.store import DataStore
from services.access import load_owned_listing, require_store_owner

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    listing_id: UUID
    record: InventoryRecord
    ledger: LedgerBalance
    transaction_count: int


class InventoryLedger:
    def __init__(self, data: DataStore, *, clock: Clock = utc_now) -> None:
        self._data = data
        self._clock = clock

    def status(self, listing_id: UUID) -> InventoryRecord:
        record = self._data.inventory.get_record(listing_id)
        if record is None:
            raise NotFoundError("Inventory", listing_id)
        return record

    def low_stock_inventory(self, actor: ActorContext, store_id: UUID) -> List[InventoryRecord]:
        """Records of the store that are at or below their restock threshold, or sold out; emptiest first."""

        store = self._data.listings.get_store(store_id)
        if store is None:
            raise NotFoundError("Store", store_id)
        require_store_owner(actor, store, "view inventory reports")
        listing_ids = [listing.listing_id for listing in self._data.listings.list_for_store(store_id)]
        records = [
            record
            for record in self._data.inventory.list_records(listing_ids)
            if record.stock_status != StockStatus.IN_STOCK
        ]
        return sorted(records, key=lambda r: r.available_to_purchase)

    def create_inventory(
        self,
        actor: ActorContext,
        listing_id: UUID,
        quantity_available: int,
        *,
        restock_threshold: Optional[int] = None,
        sku: Optional[str] = None,
    ) -> InventoryRecord:
        load_owned_listing(self._data, actor, listing_id)
        record, transaction = new_inventory_record(
            listing_id=listing_id,
            quantity_available=quantity_available,
            at=self._clock(),
            restock_threshold=restock_threshold,
            sku=sku,
            created_by=actor.actor_id,
        )
        created = self._data.inventory.create(record, transaction)
        logger.info("Created inventory for listing %s with %s units", listing_id, quantity_available)
        return created

    def reserve(self, listing_id: UUID, quantity: int, *, cart_id: UUID) -> InventoryRecord:
        try:
            record = self._data.inventory.reserve(listing_id, quantity, cart_id=cart_id, at=self._clock())
        except InsufficientStockError as exc:
            logger.warning(
                "Reservation of %s x %s for cart %s refused: %s available",
                quantity,
                listing_id,
                cart_id,
                exc.available,
            )
            raise
        logger.info("Reserved %s x %s for cart %s", quantity, listing_id, cart_id)
        return record

    def release(self, listing_id: UUID, quantity: int, *, holder_id: UUID) -> int:
        """
        Release up to `quantity` units held by a cart or order.

        Asking for more than the holder holds is a caller bug; the release is
        floored at what is actually held so reserved never goes negative.
        """

        if quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
        held = self._data.inventory.get_hold(listing_id, holder_id)
        if quantity > held:
            logger.warning(
                "Release of %s x %s by %s exceeds its hold of %s", quantity, listing_id, holder_id, held
            )
        released = self._data.inventory.release(listing_id, quantity, holder_id=holder_id, at=self._clock())
        if released:
            logger.info("Released %s x %s held by %s", released, listing_id, holder_id)
        return released

    def release_all(self, holder_id: UUID) -> int:
        total = 0
        for hold in self._data.inventory.list_holds(holder_id):
            total += self.release(hold.listing_id, hold.quantity, holder_id=holder_id)
        return total

    def transfer_hold(self, listing_id: UUID, quantity: int, *, cart_id: UUID, order_id: UUID) -> None:
        self._data.inventory.transfer_hold(
            listing_id, quantity, cart_id=cart_id, order_id=order_id, at=self._clock()
        )

    def commit_consumption(self, listing_id: UUID, quantity: int, *, order_id: UUID) -> InventoryRecord:
        record = self._data.inventory.commit(listing_id, quantity, order_id=order_id, at=self._clock())
        logger.info("Consumed %s x %s for order %s", quantity, listing_id, order_id)
        return record

    def adjust_quantity(
        self,
        actor: ActorContext,
        listing_id: UUID,
        new_available: int,
        *,
        notes: Optional[str] = None,
    ) -> InventoryRecord:
        """Set quantity_available to an absolute value (store owner only)."""

        if isinstance(new_available, bool) or not isinstance(new_available, int):
            raise ValidationError("quantity_available must be an integer")
        load_owned_listing(self._data, actor, listing_id)
        record = self._data.inventory.adjust(
            listing_id, new_available, at=self._clock(), created_by=actor.actor_id, notes=notes
        )
        logger.info("Inventory for listing %s set to %s", listing_id, new_available)
        return record

    def return_stock(
        self, actor: ActorContext, listing_id: UUID, quantity: int, *, order_id: UUID
    ) -> InventoryRecord:
        load_owned_listing(self._data, actor, listing_id)
        record = self._data.inventory.return_stock(
            listing_id, quantity, order_id=order_id, created_by=actor.actor_id, at=self._clock()
        )
        logger.info("Returned %s x %s to stock from order %s", quantity, listing_id, order_id)
        return record

    def reconcile(self, listing_id: UUID) -> ReconciliationReport:
        """
        Replay the transaction log and compare it with the stored record.

        A mismatch is reported as an InvariantViolationError and left as is.
        """

        record = self.status(listing_id)
        transactions = self._data.inventory.list_transactions(listing_id)
        ledger = replay_transactions(transactions)
        record.check_invariants()
        if (
            ledger.quantity_available != record.quantity_available
            or ledger.quantity_reserved != record.quantity_reserved
        ):
            logger.critical(
                "Inventory ledger mismatch for listing %s: record=(%s, %s) ledger=(%s, %s)",
                listing_id,
                record.quantity_available,
                record.quantity_reserved,
                ledger.quantity_available,
                ledger.quantity_reserved,
            )
            raise InvariantViolationError(
                f"Inventory for listing {listing_id} disagrees with its transaction log "
                f"(available {record.quantity_available} vs {ledger.quantity_available}, "
                f"reserved {record.quantity_reserved} vs {ledger.quantity_reserved})"
            )
        return ReconciliationReport(
            listing_id=listing_id, record=record, ledger=ledger, transaction_count=len(transactions)
        )

    def reconcile_all(self) -> List[ReconciliationReport]:
        return [self.reconcile(listing_id) for listing_id in self._data.inventory.list_listing_ids()]
