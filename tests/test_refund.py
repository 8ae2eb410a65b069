"""
Tests for `services/refund_service.py`.

Covers contract rules:
- Customers request refunds (pending); store owners approve, reject or issue
  refunds directly.
- An approved refund grows refund_total; the order is refunded when the whole
  total is refunded and partially_refunded otherwise.
- Requests are bounded by what is still refundable, counting pending requests;
  item-scoped refunds by the item's own remaining amount.
- Only paid, not yet delivered orders can be refunded.
- Money goes back through the gateway only for original-payment refunds, and
  a gateway failure records nothing.
- Refunds never restock; restock_return puts returned units back, at most the
  quantity ordered.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

from domain.errors import ErrorKind, ExternalServiceError
from domain.order import FulfillmentStatus, OrderStatus, PaymentStatus
from domain.refund import RefundMethod, RefundStatus
from services.gateways import PAYMENT_SERVICE

REASON = "Arrived with a cracked housing"


def test_customer_request_waits_for_owner_approval(engine, gateway, customer, owner, place_order) -> None:
    """Verify pending requests change nothing until approved."""

    order = place_order(customer, 2, paid=True)

    order, refund = engine.request_refund(customer, order.order_id, Decimal("10"), REASON).data
    assert refund.status == RefundStatus.PENDING
    assert order.status == OrderStatus.PROCESSING
    assert order.refund_total == Decimal("0.00")
    assert gateway.refunds == []

    order, approved = engine.approve_refund(owner, refund.refund_id).data

    assert approved.status == RefundStatus.APPROVED
    assert approved.gateway_refund_id == "re_1"
    assert approved.processed_by == owner.account_id
    assert gateway.refunds == [("pi_1", Decimal("10.00"))]
    assert order.refund_total == Decimal("10.00")
    assert order.status == OrderStatus.PARTIALLY_REFUNDED
    assert order.payment_status == PaymentStatus.PAID


def test_owner_full_refund_is_applied_at_once(engine, gateway, customer, owner, place_order) -> None:
    order = place_order(customer, 2, paid=True)
    assert order.total_price == Decimal("52.50")

    order, refund = engine.request_refund(owner, order.order_id, Decimal("52.50"), REASON).data

    assert refund.status == RefundStatus.APPROVED
    assert order.status == OrderStatus.REFUNDED
    assert order.payment_status == PaymentStatus.REFUNDED
    assert order.fulfillment_status == FulfillmentStatus.CANCELLED
    assert order.refundable_total == Decimal("0.00")
    assert gateway.refunds == [("pi_1", Decimal("52.50"))]


def test_partial_refunds_add_up_to_refunded(engine, customer, owner, place_order) -> None:
    order = place_order(customer, 2, paid=True)

    engine.request_refund(owner, order.order_id, Decimal("20"), REASON)
    order, _ = engine.request_refund(owner, order.order_id, Decimal("32.50"), REASON).data

    assert order.refund_total == Decimal("52.50")
    assert order.status == OrderStatus.REFUNDED


def test_refund_cannot_exceed_refundable_total(engine, customer, owner, place_order) -> None:
    order = place_order(customer, 2, paid=True)

    result = engine.request_refund(owner, order.order_id, Decimal("60"), REASON)

    assert result.error.kind == ErrorKind.VALIDATION.value
    assert result.error.message == "Refund exceeds the refundable amount of 52.50"


def test_pending_requests_count_against_the_limit(engine, customer, place_order) -> None:
    order = place_order(customer, 2, paid=True)
    engine.request_refund(customer, order.order_id, Decimal("50"), REASON)

    result = engine.request_refund(customer, order.order_id, Decimal("5"), REASON)

    assert result.error.message == "Refund exceeds the refundable amount of 2.50"


def test_item_scoped_refund_is_bounded_by_the_item(engine, customer, owner, gateway, place_order, catalog) -> None:
    """Verify an item refund cannot exceed that item's subtotal less earlier refunds."""

    order = place_order(customer, 2, paid=True, extra=[(catalog.gadget, 1)])
    gadget_line = next(i for i in order.items if i.listing_id == catalog.gadget.listing_id)

    too_much = engine.request_refund(owner, order.order_id, Decimal("16"), REASON, order_item_id=gadget_line.order_item_id)
    assert too_much.error.message == "Refund exceeds the refundable amount of 15.00 for this item"

    order, _ = engine.request_refund(
        owner, order.order_id, Decimal("15"), REASON, order_item_id=gadget_line.order_item_id
    ).data
    line = order.find_item(gadget_line.order_item_id)
    assert line.refund_amount == Decimal("15.00")
    assert line.refund_status == "completed"
    assert order.status == OrderStatus.PARTIALLY_REFUNDED


def test_store_credit_refund_skips_the_gateway(engine, gateway, customer, owner, place_order) -> None:
    order = place_order(customer, 1, paid=True)

    order, refund = engine.request_refund(
        owner, order.order_id, Decimal("5"), REASON, method=RefundMethod.STORE_CREDIT
    ).data

    assert gateway.refunds == []
    assert refund.gateway_refund_id is None
    assert order.refund_total == Decimal("5.00")


def test_gateway_failure_records_nothing(engine, gateway, customer, owner, place_order) -> None:
    """Verify a refused gateway refund leaves the order untouched."""

    order = place_order(customer, 2, paid=True)
    gateway.fail_with = ExternalServiceError(PAYMENT_SERVICE, "card network unavailable", retryable=True)

    result = engine.request_refund(owner, order.order_id, Decimal("10"), REASON)

    assert result.error.kind == ErrorKind.EXTERNAL_SERVICE.value
    stored = engine.get_order(customer, order.order_id).data
    assert stored.refund_total == Decimal("0.00")
    assert stored.refunds == ()
    assert stored.status == OrderStatus.PROCESSING


def test_reject_refund(engine, customer, owner, place_order) -> None:
    order = place_order(customer, 2, paid=True)
    _, refund = engine.request_refund(customer, order.order_id, Decimal("10"), REASON).data

    order, rejected = engine.reject_refund(owner, refund.refund_id).data

    assert rejected.status == RefundStatus.REJECTED
    assert order.refund_total == Decimal("0.00")
    assert order.status == OrderStatus.PROCESSING
    again = engine.approve_refund(owner, refund.refund_id)
    assert again.error.message == "Refund is already rejected"


def test_only_the_store_owner_decides(engine, customer, other_owner, place_order) -> None:
    order = place_order(customer, 2, paid=True)
    _, refund = engine.request_refund(customer, order.order_id, Decimal("10"), REASON).data

    own = engine.approve_refund(customer, refund.refund_id)
    assert own.error.message == "Only the store owner can approve refunds"

    foreign = engine.approve_refund(other_owner, refund.refund_id)
    assert foreign.error.kind == ErrorKind.NOT_FOUND.value

    assert engine.approve_refund(customer, uuid4()).error.kind == ErrorKind.NOT_FOUND.value


def test_refund_request_validation(engine, customer, place_order) -> None:
    """Verify reason length, positive amounts and paid-only refunds."""

    unpaid = place_order(customer, 1)
    result = engine.request_refund(customer, unpaid.order_id, Decimal("5"), REASON)
    assert result.error.message == "Only paid orders can be refunded"

    paid = place_order(customer, 1, paid=True)
    assert engine.request_refund(customer, paid.order_id, Decimal("5"), "broken").error.kind == (
        ErrorKind.VALIDATION.value
    )
    assert engine.request_refund(customer, paid.order_id, Decimal("0"), REASON).error.message == (
        "Refund amount must be positive"
    )


def test_delivered_orders_are_not_refundable(engine, customer, owner, place_order) -> None:
    order = place_order(customer, 2, paid=True)
    order = engine.create_shipment(owner, order.order_id, "USPS", "9400111").data
    order = engine.confirm_delivery(owner, order.order_id, order.shipments[0].shipment_id).data
    assert order.status == OrderStatus.DELIVERED

    result = engine.request_refund(owner, order.order_id, Decimal("5"), REASON)

    assert result.error.message == "Cannot refund an order that is delivered"


def test_refund_of_shipped_order_keeps_fulfillment(engine, customer, owner, place_order) -> None:
    order = place_order(customer, 2, paid=True)
    order = engine.create_shipment(owner, order.order_id, "USPS", "9400222").data

    order, _ = engine.request_refund(owner, order.order_id, Decimal("52.50"), REASON).data

    assert order.status == OrderStatus.REFUNDED
    assert order.fulfillment_status == FulfillmentStatus.FULFILLED


def test_refunds_do_not_restock(engine, customer, owner, place_order, catalog) -> None:
    order = place_order(customer, 2, paid=True)
    assert engine.inventory_status(catalog.widget.listing_id).data.quantity_available == 8

    engine.request_refund(owner, order.order_id, Decimal("52.50"), REASON)

    assert engine.inventory_status(catalog.widget.listing_id).data.quantity_available == 8


def test_restock_return_is_capped_at_quantity_ordered(engine, customer, owner, place_order, catalog) -> None:
    """Verify returned units go back to stock, never more than were ordered."""

    order = place_order(customer, 2, paid=True)
    line = order.items[0]

    record = engine.restock_return(owner, order.order_id, line.order_item_id, 1).data
    assert record.quantity_available == 9

    too_many = engine.restock_return(owner, order.order_id, line.order_item_id, 2)
    assert too_many.error.message == "Only 1 of Widget can be returned"

    record = engine.restock_return(owner, order.order_id, line.order_item_id, 1).data
    assert record.quantity_available == 10
    assert engine.reconcile_inventory(catalog.widget.listing_id).ok


def test_restock_return_rules(engine, customer, owner, place_order, catalog) -> None:
    order = place_order(customer, 1, paid=True, extra=[(catalog.ebook, 1)])
    widget_line = next(i for i in order.items if i.listing_id == catalog.widget.listing_id)
    ebook_line = next(i for i in order.items if i.is_digital)

    by_customer = engine.restock_return(customer, order.order_id, widget_line.order_item_id, 1)
    assert by_customer.error.message == "Only the store owner can restock returned items"

    digital = engine.restock_return(owner, order.order_id, ebook_line.order_item_id, 1)
    assert digital.error.message == "Digital items cannot be restocked"

    unpaid = place_order(customer, 1)
    early = engine.restock_return(owner, unpaid.order_id, unpaid.items[0].order_item_id, 1)
    assert early.error.message == "Only paid orders can have returned items"
