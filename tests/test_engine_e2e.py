"""
End-to-end tests for `services/engine.py` on the in-memory store.

Covers contract rules:
- Cart → shipping → checkout → payment → shipment → delivery, with totals
  and inventory checked at every step.
- Checkout is all or nothing: a failure part-way leaves no order, the cart
  active and its reservations in place.
- Concurrent buyers of the last unit: exactly one reservation succeeds.
- The expiry sweep releases abandoned guest carts and stale unpaid orders.
- Payment callbacks are idempotent; a failed payment releases the holds.
- Expected failures come back as typed results; invariant violations are
  raised.
- Every payment intent created for an order can settle it; refunds go back
  through the intent that paid.
- Checkout refuses a cart that changed after it was read.
- Order listings, order notes and the low-stock report.
"""

from __future__ import annotations

import threading
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import DESTINATION
from domain.actor import ActorContext
from domain.cart import CartStatus
from domain.coupon import Coupon, DiscountType
from domain.errors import ErrorKind, InvariantViolationError, ValidationError
from domain.inventory import StockStatus
from domain.listing import Listing
from domain.order import (
    FulfillmentStatus,
    OrderEventType,
    OrderNoteType,
    OrderStatus,
    PaymentStatus,
    order_from_cart,
)


def _stock(engine, listing):
    return engine.inventory_status(listing.listing_id).data


def test_full_purchase_flow(engine, data, gateway, catalog, customer, owner) -> None:
    """Verify totals, reservations and status through a complete order."""

    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.widget.listing_id, 2)
    assert _stock(engine, catalog.widget).available_to_purchase == 8

    cart = engine.get_shipping_rates(customer, cart.cart_id, DESTINATION).data
    cart = engine.select_shipping_option(customer, cart.cart_id, cart.shipping_options[0].option_id).data
    assert (cart.subtotal, cart.total_shipping, cart.total_tax, cart.total_price) == (
        Decimal("40.00"),
        Decimal("8.50"),
        Decimal("4.00"),
        Decimal("52.50"),
    )

    order = engine.checkout(customer, cart.cart_id).data
    assert order.total_price == Decimal("52.50")
    assert order.shipping_carrier == "USPS"
    assert data.carts.get(cart.cart_id).status == CartStatus.CONVERTED
    assert data.inventory.get_hold(catalog.widget.listing_id, cart.cart_id) == 0
    assert data.inventory.get_hold(catalog.widget.listing_id, order.order_id) == 2
    assert _stock(engine, catalog.widget).quantity_reserved == 2

    order, intent = engine.create_payment_intent(customer, order.order_id).data
    assert intent.amount == Decimal("52.50")
    assert order.payment_status == PaymentStatus.PENDING

    order = engine.record_payment(intent.intent_id).data
    assert order.status == OrderStatus.PROCESSING
    stock = _stock(engine, catalog.widget)
    assert (stock.quantity_available, stock.quantity_reserved) == (8, 0)

    order = engine.create_shipment(owner, order.order_id, "USPS", "9400100000000000000000").data
    assert order.fulfillment_status == FulfillmentStatus.FULFILLED
    order = engine.confirm_delivery(owner, order.order_id, order.shipments[0].shipment_id).data
    assert order.status == OrderStatus.DELIVERED

    events, snapshot = engine.get_order_history(customer, order.order_id).data
    assert [e.event_type for e in events] == [
        OrderEventType.ORDER_CREATED,
        OrderEventType.PAYMENT_INTENT_CREATED,
        OrderEventType.PAYMENT_RECEIVED,
        OrderEventType.SHIPMENT_CREATED,
        OrderEventType.DELIVERY_CONFIRMED,
    ]
    assert snapshot == order.snapshot
    assert all(r.ledger.quantity_reserved == 0 for r in engine.reconcile_inventory().data)


def test_checkout_is_all_or_nothing(engine, data, catalog, customer, coupons, monkeypatch) -> None:
    """Verify a failure while moving holds leaves no trace of the order."""

    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.widget.listing_id, 2)
    engine.add_item(customer, cart.cart_id, catalog.gadget.listing_id, 1)
    engine.apply_coupon(customer, cart.cart_id, "SAVE10")
    cart = engine.get_shipping_rates(customer, cart.cart_id, DESTINATION).data
    engine.select_shipping_option(customer, cart.cart_id, cart.shipping_options[0].option_id)

    original = data.inventory.transfer_hold
    calls = []

    def flaky_transfer(*args, **kwargs):
        calls.append(args)
        if len(calls) == 2:
            raise RuntimeError("lost connection during checkout")
        return original(*args, **kwargs)

    monkeypatch.setattr(data.inventory, "transfer_hold", flaky_transfer)

    with pytest.raises(RuntimeError):
        engine.checkout(customer, cart.cart_id)

    db = data.orders._db
    assert db.orders == {}
    assert db.order_events == []
    assert db.redemptions == []
    assert data.carts.get(cart.cart_id).status == CartStatus.ACTIVE
    assert data.inventory.get_hold(catalog.widget.listing_id, cart.cart_id) == 2
    assert data.inventory.get_hold(catalog.gadget.listing_id, cart.cart_id) == 1

    monkeypatch.setattr(data.inventory, "transfer_hold", original)
    order = engine.checkout(customer, cart.cart_id).data
    assert order.coupon_codes == ("SAVE10",)
    assert len(db.redemptions) == 1


def test_concurrent_buyers_of_the_last_unit(engine, owner, catalog) -> None:
    """Verify exactly one of many simultaneous reservations gets the last unit."""

    engine.adjust_inventory(owner, catalog.widget.listing_id, 1)
    buyers = [ActorContext(account_id=uuid4()) for _ in range(8)]
    carts = [engine.get_or_create_cart(buyer).data for buyer in buyers]
    results = [None] * len(buyers)
    start = threading.Barrier(len(buyers))

    def buy(index):
        start.wait()
        results[index] = engine.add_item(buyers[index], carts[index].cart_id, catalog.widget.listing_id, 1)

    threads = [threading.Thread(target=buy, args=(i,)) for i in range(len(buyers))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for r in results if r.ok) == 1
    failures = [r.error for r in results if not r.ok]
    assert all(e.kind == ErrorKind.INSUFFICIENT_STOCK.value for e in failures)
    assert all(e.message == "This item is out of stock" for e in failures)
    stock = _stock(engine, catalog.widget)
    assert (stock.quantity_available, stock.quantity_reserved, stock.available_to_purchase) == (1, 1, 0)


def test_sweep_releases_abandoned_carts_and_unpaid_orders(
    engine, data, catalog, customer, guest, clock, place_order
) -> None:
    order = place_order(customer, 3)
    guest_cart = engine.get_or_create_cart(guest).data
    engine.add_item(guest, guest_cart.cart_id, catalog.widget.listing_id, 2)
    assert _stock(engine, catalog.widget).quantity_reserved == 5

    clock.advance(minutes=31)
    report = engine.release_expired_reservations().data
    assert report.cancelled_order_ids == [order.order_id]
    assert report.expired_cart_ids == []
    assert _stock(engine, catalog.widget).quantity_reserved == 2

    clock.advance(hours=168)
    report = engine.release_expired_reservations().data
    assert report.expired_cart_ids == [guest_cart.cart_id]
    assert data.carts.get(guest_cart.cart_id).status == CartStatus.EXPIRED
    assert _stock(engine, catalog.widget).quantity_reserved == 0

    cancelled = engine.get_order(customer, order.order_id).data
    assert cancelled.status == OrderStatus.CANCELLED
    assert engine.release_expired_reservations().data.cancelled_order_ids == []


def test_paid_orders_survive_the_sweep(engine, customer, clock, place_order) -> None:
    order = place_order(customer, 1, paid=True)

    clock.advance(hours=2)
    report = engine.release_expired_reservations().data

    assert report.cancelled_order_ids == []
    assert engine.get_order(customer, order.order_id).data.status == OrderStatus.PROCESSING


def test_payment_callback_is_idempotent(engine, data, catalog, customer, place_order) -> None:
    order = place_order(customer, 2, paid=True)
    log_size = len(data.inventory.list_transactions(catalog.widget.listing_id))

    again = engine.record_payment(order.payment_intent_id).data

    assert again == engine.get_order(customer, order.order_id).data
    assert len(data.inventory.list_transactions(catalog.widget.listing_id)) == log_size
    assert _stock(engine, catalog.widget).quantity_available == 8


def test_payment_failure_releases_the_holds(engine, data, catalog, customer, place_order) -> None:
    order = place_order(customer, 2)
    order, intent = engine.create_payment_intent(customer, order.order_id).data

    order = engine.record_payment_failure(intent.intent_id, "card declined").data

    assert order.status == OrderStatus.CANCELLED
    assert order.payment_status == PaymentStatus.FAILED
    assert data.inventory.get_hold(catalog.widget.listing_id, order.order_id) == 0
    stock = _stock(engine, catalog.widget)
    assert (stock.quantity_available, stock.quantity_reserved) == (10, 0)
    assert engine.record_payment(intent.intent_id).error.kind == ErrorKind.VALIDATION.value


def test_unknown_payment_intent_is_not_found(engine) -> None:
    assert engine.record_payment("pi_missing").error.kind == ErrorKind.NOT_FOUND.value


def test_customer_cancels_unpaid_order(engine, catalog, customer, place_order) -> None:
    order = place_order(customer, 2)

    order = engine.cancel_order(customer, order.order_id, "ordered by mistake").data

    assert order.status == OrderStatus.CANCELLED
    assert _stock(engine, catalog.widget).quantity_reserved == 0


def test_digital_only_checkout_needs_no_shipping(engine, catalog, customer) -> None:
    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.ebook.listing_id, 1)

    order = engine.checkout(customer, cart.cart_id).data

    assert order.total_shipping == Decimal("0.00")
    assert order.total_price == Decimal("11.00")
    assert order.items[0].is_digital is True


def test_checkout_requires_shipping_for_physical_goods(engine, catalog, customer) -> None:
    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.widget.listing_id, 1)

    result = engine.checkout(customer, cart.cart_id)

    assert result.error.message == "Shipping method is required"


def test_guest_checkout_and_coupon_limit(engine, catalog, guest, coupons) -> None:
    """Verify guest redemptions are counted per device."""

    cart = engine.get_or_create_cart(guest).data
    engine.add_item(guest, cart.cart_id, catalog.ebook.listing_id, 1)
    engine.apply_coupon(guest, cart.cart_id, "ONCE")
    order = engine.checkout(guest, cart.cart_id).data
    assert order.total_discounts == Decimal("3.00")
    assert order.device_id == guest.device_id

    cart = engine.get_or_create_cart(guest).data
    engine.add_item(guest, cart.cart_id, catalog.ebook.listing_id, 1)
    result = engine.apply_coupon(guest, cart.cart_id, "ONCE")
    assert result.error.message == "Coupon usage limit reached"


def test_order_visibility(engine, customer, other_customer, owner, other_owner, place_order) -> None:
    """Verify customers see their orders, store owners see their store's, nobody else."""

    order = place_order(customer, 1)

    assert engine.get_order(owner, order.order_id).ok
    for actor in (other_customer, other_owner):
        result = engine.get_order(actor, order.order_id)
        assert result.error.kind == ErrorKind.NOT_FOUND.value
        assert result.error.message == "Order not found"

    shipped_by_customer = engine.create_shipment(customer, order.order_id, "USPS", "1")
    assert shipped_by_customer.error.message == "Only the store owner can create shipments"


def test_hold_and_resume_through_the_engine(engine, customer, owner, place_order) -> None:
    order = place_order(customer, 1, paid=True)

    held = engine.hold_order(owner, order.order_id, "fraud review").data
    assert held.status == OrderStatus.ON_HOLD
    assert engine.create_shipment(owner, order.order_id, "USPS", "9400").ok is False

    resumed = engine.resume_order(owner, order.order_id).data
    assert resumed.status == OrderStatus.PROCESSING


def test_ledger_mismatch_is_raised_not_returned(engine, data, catalog, customer) -> None:
    """Verify a cart whose reservation drifted halts checkout."""

    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.ebook.listing_id, 2)
    data.inventory._db.holds[(catalog.ebook.listing_id, cart.cart_id)] = 1

    with pytest.raises(InvariantViolationError):
        engine.checkout(customer, cart.cart_id)

    assert data.carts.get(cart.cart_id).status == CartStatus.ACTIVE


def test_fixed_coupon_purchase_consumes_exactly_the_ordered_units(engine, data, catalog, customer, owner) -> None:
    """Verify a $50 x 2 cart with a $10 coupon, then payment shrinks stock by 2."""

    kettle = data.listings.add_listing(Listing(uuid4(), catalog.store.store_id, "Kettle", Decimal("50.00")))
    engine.ledger.create_inventory(owner, kettle.listing_id, 10)
    data.coupons.add(Coupon(uuid4(), "TENOFF", DiscountType.FIXED_AMOUNT, Decimal("10")))
    reserved_before = _stock(engine, kettle).quantity_reserved

    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, kettle.listing_id, 2)
    cart = engine.apply_coupon(customer, cart.cart_id, "TENOFF").data
    assert (cart.subtotal, cart.total_discounts) == (Decimal("100.00"), Decimal("10.00"))
    assert cart.subtotal - cart.total_discounts == Decimal("90.00")
    assert _stock(engine, kettle).quantity_reserved == reserved_before + 2

    cart = engine.get_shipping_rates(customer, cart.cart_id, DESTINATION).data
    engine.select_shipping_option(customer, cart.cart_id, cart.shipping_options[0].option_id)
    order = engine.checkout(customer, cart.cart_id).data
    order, intent = engine.create_payment_intent(customer, order.order_id).data
    engine.record_payment(intent.intent_id)

    stock = _stock(engine, kettle)
    assert stock.quantity_available == 8
    assert stock.quantity_reserved == reserved_before


def test_digital_cart_is_quoted_a_free_rate(engine, provider, catalog, customer) -> None:
    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.ebook.listing_id, 1)

    cart = engine.get_shipping_rates(customer, cart.cart_id, DESTINATION).data

    assert [(o.carrier, o.amount) for o in cart.shipping_options] == [("N/A", Decimal("0.00"))]
    assert provider.calls == 0


def test_earlier_payment_intent_still_settles_the_order(
    engine, data, gateway, catalog, owner, customer, place_order, caplog
) -> None:
    """Verify a customer paying the first of two intents is recorded and refunded through it."""

    order = place_order(customer, 2)
    _, first = engine.create_payment_intent(customer, order.order_id).data
    _, second = engine.create_payment_intent(customer, order.order_id).data
    assert first.intent_id != second.intent_id

    stale_failure = engine.record_payment_failure(first.intent_id, "session abandoned").data
    assert stale_failure.status == OrderStatus.PENDING
    assert data.inventory.get_hold(catalog.widget.listing_id, order.order_id) == 2

    paid = engine.record_payment(first.intent_id).data
    assert paid.status == OrderStatus.PROCESSING
    assert paid.payment_intent_id == first.intent_id
    assert paid.payment_intent_ids == (first.intent_id, second.intent_id)
    assert _stock(engine, catalog.widget).quantity_available == 8

    again = engine.record_payment(second.intent_id).data
    assert again.payment_intent_id == first.intent_id
    assert "must be refunded" in caplog.text
    assert _stock(engine, catalog.widget).quantity_available == 8

    engine.request_refund(owner, order.order_id, Decimal("10"), "Arrived with a cracked housing")
    assert gateway.refunds == [(first.intent_id, Decimal("10.00"))]


def test_checkout_of_a_cart_changed_after_reading_is_refused(engine, data, catalog, customer, clock) -> None:
    """Verify the hand-off to an order checks the cart is still the one that was priced."""

    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.ebook.listing_id, 1)
    read = engine.carts.recalculate(data.carts.get(cart.cart_id))
    engine.add_item(customer, cart.cart_id, catalog.ebook.listing_id, 2)
    order, event = order_from_cart(read, at=clock.now, actor_id=customer.actor_id)

    with pytest.raises(ValidationError) as excinfo:
        data.orders.create_from_cart(order, event, read, [])

    assert excinfo.value.message == "Cart changed during checkout; review it and try again"
    assert data.orders.get(order.order_id) is None
    assert data.carts.get(cart.cart_id).status == CartStatus.ACTIVE
    assert data.inventory.get_hold(catalog.ebook.listing_id, cart.cart_id) == 3
    assert data.inventory.get_hold(catalog.ebook.listing_id, order.order_id) == 0

    fresh = engine.checkout(customer, cart.cart_id).data
    assert fresh.items[0].quantity == 3


def test_order_listings_for_customers_and_store_owners(
    engine, catalog, customer, other_customer, owner, other_owner, clock, place_order
) -> None:
    first = place_order(customer, 1)
    clock.advance(minutes=1)
    second = place_order(customer, 2, paid=True)
    clock.advance(minutes=1)
    theirs = place_order(other_customer, 1)

    mine = engine.list_customer_orders(customer).data
    assert [o.order_id for o in mine] == [second.order_id, first.order_id]
    assert [o.order_id for o in engine.list_customer_orders(other_customer).data] == [theirs.order_id]

    store_orders = engine.list_store_orders(owner, catalog.store.store_id).data
    assert [o.order_id for o in store_orders] == [theirs.order_id, second.order_id, first.order_id]
    processing = engine.list_store_orders(owner, catalog.store.store_id, OrderStatus.PROCESSING).data
    assert [o.order_id for o in processing] == [second.order_id]

    refused = engine.list_store_orders(other_owner, catalog.store.store_id)
    assert refused.error.message == "Only the store owner can view store orders"
    assert engine.list_store_orders(owner, uuid4()).error.kind == ErrorKind.NOT_FOUND.value
    assert engine.list_store_orders(owner, catalog.other_store.store_id).ok is False


def test_order_notes_and_their_visibility(engine, customer, owner, other_customer, place_order) -> None:
    """Verify internal notes stay with the store owner and customer notes are shared."""

    order = place_order(customer, 1)

    engine.add_order_note(owner, order.order_id, "Fragile, pack with extra padding", OrderNoteType.INTERNAL)
    seen_by_customer = engine.add_order_note(customer, order.order_id, "  Please leave it at the door ").data

    assert [n.content for n in seen_by_customer.notes] == ["Please leave it at the door"]
    assert [n.note_type for n in engine.get_order(owner, order.order_id).data.notes] == [
        OrderNoteType.INTERNAL,
        OrderNoteType.CUSTOMER,
    ]
    assert len(engine.get_order(customer, order.order_id).data.notes) == 1
    assert len(engine.list_customer_orders(customer).data[0].notes) == 1

    internal = engine.add_order_note(customer, order.order_id, "Give me a discount", OrderNoteType.INTERNAL)
    assert internal.error.message == "Only the store owner can add internal notes"
    assert engine.add_order_note(customer, order.order_id, "   ").error.message == "Note content is required"
    assert engine.add_order_note(other_customer, order.order_id, "Hi").error.kind == ErrorKind.NOT_FOUND.value

    events, snapshot = engine.get_order_history(owner, order.order_id).data
    assert [e.event_type for e in events].count(OrderEventType.NOTE_ADDED) == 2
    assert snapshot.status == OrderStatus.PENDING


def test_low_stock_report_lists_emptiest_first(engine, catalog, customer, owner, other_owner) -> None:
    engine.adjust_inventory(owner, catalog.widget.listing_id, 2)
    engine.adjust_inventory(owner, catalog.gadget.listing_id, 0)

    report = engine.low_stock_inventory(owner, catalog.store.store_id).data

    assert [(r.listing_id, r.stock_status) for r in report] == [
        (catalog.gadget.listing_id, StockStatus.OUT_OF_STOCK),
        (catalog.widget.listing_id, StockStatus.LOW_STOCK),
    ]
    for actor in (other_owner, customer):
        refused = engine.low_stock_inventory(actor, catalog.store.store_id)
        assert refused.error.message == "Only the store owner can view inventory reports"
