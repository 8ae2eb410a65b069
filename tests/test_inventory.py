"""
Tests for `domain/inventory.py` and `services/inventory_ledger.py`.

Covers contract rules:
- available_to_purchase = quantity_available - quantity_reserved, never negative.
- Reservations fail with InsufficientStockError carrying what is left.
- Release is floored at what the holder holds; reserved never goes negative.
- Adjustments record restock vs adjustment and cannot drop below reserved.
- Consumption shrinks both pools and requires the order to hold the units.
- Replaying the transaction log reproduces every record; a mismatch is an
  invariant violation and is not repaired.
- Only the store owner changes stock.
- No side effects: transitions return new instances; prior records are unchanged.
"""

from __future__ import annotations

from dataclasses import FrozenInstanceError, replace
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from domain.errors import InsufficientStockError, InvariantViolationError, NotFoundError, ValidationError
from domain.inventory import StockStatus, TransactionType, new_inventory_record, replay_transactions

T0 = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
LISTING = UUID("00000000-0000-0000-0000-000000000010")
CART = UUID("00000000-0000-0000-0000-000000000020")
ORDER = UUID("00000000-0000-0000-0000-000000000030")


def _record(quantity: int = 10, **kwargs):
    record, _ = new_inventory_record(listing_id=LISTING, quantity_available=quantity, at=T0, **kwargs)
    return record


def test_new_record_opens_with_a_restock_transaction() -> None:
    """Verify opening stock is logged so the log alone reproduces the record."""

    record, txn = new_inventory_record(listing_id=LISTING, quantity_available=7, at=T0, sku="SKU-1")

    assert record.quantity_available == 7
    assert record.quantity_reserved == 0
    assert record.last_restock_date == T0
    assert txn.transaction_type == TransactionType.RESTOCK
    assert txn.quantity_change == 7
    assert replay_transactions([txn]).quantity_available == 7


def test_record_requires_utc_timestamps() -> None:
    """Verify naive and non-UTC timestamps are rejected."""

    with pytest.raises(ValueError):
        new_inventory_record(listing_id=LISTING, quantity_available=1, at=datetime(2025, 1, 1))

    with pytest.raises(ValueError):
        new_inventory_record(
            listing_id=LISTING, quantity_available=1, at=datetime(2025, 1, 1, tzinfo=timezone(timedelta(hours=1)))
        )


def test_reserve_returns_new_instance_and_keeps_original_unchanged() -> None:
    """Verify reserving does not mutate the original record."""

    record = _record(10)
    updated, txn = record.reserve(3, cart_id=CART, at=T0)

    assert record.quantity_reserved == 0
    assert updated.quantity_reserved == 3
    assert updated.available_to_purchase == 7
    assert txn.quantity_change == -3
    assert txn.reserved_change == 3
    assert txn.cart_id == CART
    with pytest.raises(FrozenInstanceError):
        record.quantity_reserved = 5  # type: ignore[misc]


def test_reserve_beyond_available_reports_remaining_quantity() -> None:
    """Verify an oversized reservation fails and carries the available quantity."""

    record, _ = _record(5).reserve(3, cart_id=CART, at=T0)

    with pytest.raises(InsufficientStockError) as exc_info:
        record.reserve(3, cart_id=CART, at=T0)

    assert exc_info.value.available == 2
    assert exc_info.value.requested == 3
    assert exc_info.value.message == "Only 2 available"


def test_reserve_rejects_non_positive_quantities() -> None:
    """Verify zero, negative and boolean quantities are rejected."""

    record = _record(5)
    for quantity in (0, -1, True):
        with pytest.raises(ValidationError):
            record.reserve(quantity, cart_id=CART, at=T0)


def test_release_is_floored_at_reserved() -> None:
    """Verify releasing more than is reserved never drives reserved negative."""

    record, _ = _record(5).reserve(2, cart_id=CART, at=T0)
    released, txn = record.release(5, at=T0, cart_id=CART)

    assert released.quantity_reserved == 0
    assert txn.quantity_change == 2
    assert txn.reserved_change == -2


def test_commit_shrinks_both_pools() -> None:
    """Verify consumption removes the units from available and reserved."""

    record, _ = _record(10).reserve(4, cart_id=CART, at=T0)
    committed, txn = record.commit(4, order_id=ORDER, at=T0)

    assert committed.quantity_available == 6
    assert committed.quantity_reserved == 0
    assert committed.available_to_purchase == 6
    assert txn.transaction_type == TransactionType.SALE


def test_commit_more_than_reserved_is_an_invariant_violation() -> None:
    """Verify consuming unreserved stock is treated as ledger corruption."""

    with pytest.raises(InvariantViolationError):
        _record(10).commit(1, order_id=ORDER, at=T0)


def test_adjust_records_restock_and_adjustment() -> None:
    """Verify increases are restocks (dated) and decreases are adjustments."""

    record = _record(10)
    later = T0 + timedelta(days=1)

    raised, up = record.adjust(15, at=later)
    assert up.transaction_type == TransactionType.RESTOCK
    assert up.quantity_change == 5
    assert raised.last_restock_date == later

    lowered, down = raised.adjust(12, at=later + timedelta(days=1))
    assert down.transaction_type == TransactionType.ADJUSTMENT
    assert down.quantity_change == -3
    assert lowered.last_restock_date == later

    same, none = lowered.adjust(12, at=later)
    assert none is None
    assert same is lowered


def test_adjust_below_reserved_is_rejected() -> None:
    """Verify stock cannot be set below what carts currently hold."""

    record, _ = _record(10).reserve(6, cart_id=CART, at=T0)

    with pytest.raises(ValidationError):
        record.adjust(5, at=T0)
    with pytest.raises(ValidationError):
        record.adjust(-1, at=T0)


def test_stock_status_uses_restock_threshold() -> None:
    """Verify in_stock / low_stock / out_of_stock classification."""

    record = _record(10, restock_threshold=3)
    assert record.stock_status == StockStatus.IN_STOCK

    low, _ = record.reserve(7, cart_id=CART, at=T0)
    assert low.stock_status == StockStatus.LOW_STOCK

    out, _ = low.reserve(3, cart_id=CART, at=T0)
    assert out.stock_status == StockStatus.OUT_OF_STOCK


def test_replay_reproduces_record_after_mixed_operations() -> None:
    """Verify Σ changes over the log equals the final record."""

    record, opening = new_inventory_record(listing_id=LISTING, quantity_available=10, at=T0)
    log = [opening]
    record, t = record.reserve(4, cart_id=CART, at=T0)
    log.append(t)
    record, t = record.release(1, at=T0, cart_id=CART)
    log.append(t)
    record, t = record.commit(3, order_id=ORDER, at=T0)
    log.append(t)
    record, t = record.add_returned(2, at=T0, order_id=ORDER)
    log.append(t)
    record, t = record.adjust(12, at=T0)
    log.append(t)

    balance = replay_transactions(log)
    assert balance.quantity_available == record.quantity_available == 12
    assert balance.quantity_reserved == record.quantity_reserved == 0


# ---------------------------------------------------------------------------
# InventoryLedger service
# ---------------------------------------------------------------------------


def test_ledger_reserve_and_release_track_holds(engine, data, catalog) -> None:
    """Verify holds follow reservations and releases per holder."""

    listing_id = catalog.widget.listing_id
    cart_id = uuid4()
    engine.ledger.reserve(listing_id, 4, cart_id=cart_id)
    assert data.inventory.get_hold(listing_id, cart_id) == 4

    released = engine.ledger.release(listing_id, 10, holder_id=cart_id)

    assert released == 4
    assert data.inventory.get_hold(listing_id, cart_id) == 0
    assert engine.ledger.status(listing_id).quantity_reserved == 0


def test_ledger_release_without_hold_changes_nothing(engine, data, catalog) -> None:
    """Verify a release by a holder with no hold is a no-op."""

    listing_id = catalog.widget.listing_id
    before = len(data.inventory.list_transactions(listing_id))

    assert engine.ledger.release(listing_id, 3, holder_id=uuid4()) == 0
    assert len(data.inventory.list_transactions(listing_id)) == before


def test_ledger_reserve_failure_leaves_stock_untouched(engine, catalog) -> None:
    """Verify a refused reservation changes neither the record nor the log."""

    listing_id = catalog.gadget.listing_id
    with pytest.raises(InsufficientStockError):
        engine.ledger.reserve(listing_id, 6, cart_id=uuid4())

    record = engine.ledger.status(listing_id)
    assert record.quantity_reserved == 0
    assert engine.ledger.reconcile(listing_id).transaction_count == 1


def test_adjust_requires_store_owner(engine, catalog, other_owner, customer) -> None:
    """Verify only the listing's store owner may change stock."""

    for actor in (other_owner, customer):
        with pytest.raises(NotFoundError):
            engine.ledger.adjust_quantity(actor, catalog.widget.listing_id, 50)


def test_create_inventory_twice_is_rejected(engine, owner, catalog) -> None:
    """Verify one inventory record per listing."""

    with pytest.raises(ValidationError):
        engine.ledger.create_inventory(owner, catalog.widget.listing_id, 3)


def test_status_of_unknown_listing_is_not_found(engine) -> None:
    with pytest.raises(NotFoundError):
        engine.ledger.status(uuid4())


def test_reconcile_all_agrees_after_activity(engine, owner, catalog) -> None:
    """Verify reconciliation passes after reservations, releases and adjustments."""

    cart_id = uuid4()
    engine.ledger.reserve(catalog.widget.listing_id, 3, cart_id=cart_id)
    engine.ledger.release(catalog.widget.listing_id, 1, holder_id=cart_id)
    engine.ledger.adjust_quantity(owner, catalog.widget.listing_id, 20)

    reports = engine.ledger.reconcile_all()

    assert {r.listing_id for r in reports} == {
        catalog.widget.listing_id,
        catalog.gadget.listing_id,
        catalog.ebook.listing_id,
        catalog.foreign.listing_id,
    }
    widget = next(r for r in reports if r.listing_id == catalog.widget.listing_id)
    assert widget.ledger.quantity_available == 20
    assert widget.ledger.quantity_reserved == 2


def test_reconcile_detects_tampered_record(engine, data, catalog) -> None:
    """Verify a record edited outside the ledger is reported and left as is."""

    listing_id = catalog.widget.listing_id
    db_records = data.inventory._db.inventory
    db_records[listing_id] = replace(db_records[listing_id], quantity_available=99)

    with pytest.raises(InvariantViolationError):
        engine.ledger.reconcile(listing_id)

    assert engine.ledger.status(listing_id).quantity_available == 99
