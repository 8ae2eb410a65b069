"""
Refund service.

Handles:
- Refund requests from customers (pending until the store owner decides)
- Refunds issued directly by the store owner (approved and applied at once)
- Approval / rejection of pending requests
- Explicit restocking of returned goods

Applying a refund calls the payment gateway first when the money goes back to
the original payment, and only then records the refund on the order. Refunds
never touch inventory; `restock_return` is the only way returned goods get
back on the shelf.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Tuple
from uuid import UUID, uuid4

from domain.actor import ActorContext
from domain.errors import NotFoundError, ValidationError
from domain.inventory import InventoryRecord, TransactionType
from domain.money import ZERO, money_sum, to_money
from domain.order import STATUS_TRANSITIONS, Order, OrderStatus, PaymentStatus, can_transition
from domain.refund import (
    OrderRefund,
    RefundMethod,
    RefundReasonCategory,
    RefundStatus,
    validate_reason,
)
from domain.time import Clock, utc_now
from repositories.store import DataStore
from services.access import is_store_owner, load_order, require_store_owner
from services.gateways import PaymentGateway
from services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)


class RefundService:
    def __init__(
        self,
        data: DataStore,
        ledger: InventoryLedger,
        gateway: PaymentGateway,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._data = data
        self._ledger = ledger
        self._gateway = gateway
        self._clock = clock

    def request_refund(
        self,
        actor: ActorContext,
        order_id: UUID,
        amount: Decimal,
        reason: str,
        *,
        order_item_id: Optional[UUID] = None,
        method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT,
        reason_category: Optional[RefundReasonCategory] = None,
    ) -> Tuple[Order, OrderRefund]:
        """
        Request (customer) or issue (store owner) a refund.

        Amount must be positive and fit in what is still refundable once
        pending requests are counted; item-scoped refunds are also bounded by
        the item's own remaining amount.
        """

        order, store = load_order(self._data, actor, order_id)
        text = validate_reason(reason)
        try:
            value = to_money(amount)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if value <= ZERO:
            raise ValidationError("Refund amount must be positive")

        self._require_refundable(order)
        pending = money_sum(r.amount for r in order.refunds if r.is_pending)
        remaining = to_money(order.refundable_total - pending)
        if value > remaining:
            raise ValidationError(f"Refund exceeds the refundable amount of {remaining}")
        if order_item_id is not None:
            item = order.find_item(order_item_id)
            item_pending = money_sum(
                r.amount for r in order.refunds if r.is_pending and r.order_item_id == order_item_id
            )
            item_remaining = to_money(item.refundable_amount - item_pending)
            if value > item_remaining:
                raise ValidationError(
                    f"Refund exceeds the refundable amount of {item_remaining} for this item"
                )

        now = self._clock()
        refund = OrderRefund(
            refund_id=uuid4(),
            order_id=order.order_id,
            amount=value,
            reason=text,
            method=method,
            status=RefundStatus.PENDING,
            created_at=now,
            order_item_id=order_item_id,
            reason_category=reason_category,
            requested_by=actor.actor_id,
        )

        if is_store_owner(actor, store):
            updated, applied = self._apply(order, refund, actor)
            return updated, applied

        updated, event = order.with_refund_requested(refund, at=now, actor_id=actor.actor_id)
        self._data.orders.save(updated, [event])
        logger.info("Refund %s of %s requested for order %s", refund.refund_id, value, order.order_id)
        return updated, refund

    def approve_refund(self, actor: ActorContext, refund_id: UUID) -> Tuple[Order, OrderRefund]:
        order, refund = self._load_pending(actor, refund_id, "approve refunds")
        self._require_refundable(order)
        return self._apply(order, refund, actor)

    def reject_refund(self, actor: ActorContext, refund_id: UUID) -> Tuple[Order, OrderRefund]:
        order, refund = self._load_pending(actor, refund_id, "reject refunds")
        now = self._clock()
        rejected = refund.rejected(by=actor.actor_id, at=now)
        updated, event = order.with_refund_rejected(rejected, at=now, actor_id=actor.actor_id)
        self._data.orders.save(updated, [event])
        logger.info("Refund %s for order %s rejected", refund_id, order.order_id)
        return updated, rejected

    def restock_return(
        self, actor: ActorContext, order_id: UUID, order_item_id: UUID, quantity: int
    ) -> InventoryRecord:
        """Put returned units of an order item back into stock (store owner only)."""

        order, store = load_order(self._data, actor, order_id)
        require_store_owner(actor, store, "restock returned items")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Quantity must be a positive integer")
        if order.payment_status not in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            raise ValidationError("Only paid orders can have returned items")
        item = order.find_item(order_item_id)
        if item.is_digital:
            raise ValidationError("Digital items cannot be restocked")

        already = sum(
            t.quantity_change
            for t in self._data.inventory.list_transactions(item.listing_id)
            if t.transaction_type == TransactionType.RETURN and t.order_id == order.order_id
        )
        if already + quantity > item.quantity:
            raise ValidationError(f"Only {item.quantity - already} of {item.title} can be returned")
        return self._ledger.return_stock(actor, item.listing_id, quantity, order_id=order.order_id)

    # -- internals ---------------------------------------------------------

    def _load_pending(self, actor: ActorContext, refund_id: UUID, action: str) -> Tuple[Order, OrderRefund]:
        order = self._data.orders.find_by_refund(refund_id)
        if order is None:
            raise NotFoundError("Refund", refund_id)
        order, store = load_order(self._data, actor, order.order_id)
        require_store_owner(actor, store, action)
        refund = order.find_refund(refund_id)
        if not refund.is_pending:
            raise ValidationError(f"Refund is already {refund.status.value}")
        return order, refund

    @staticmethod
    def _require_refundable(order: Order) -> None:
        if order.payment_status != PaymentStatus.PAID:
            raise ValidationError("Only paid orders can be refunded")
        if not can_transition(STATUS_TRANSITIONS, order.status, OrderStatus.PARTIALLY_REFUNDED):
            raise ValidationError(f"Cannot refund an order that is {order.status.value}")

    def _apply(self, order: Order, refund: OrderRefund, actor: ActorContext) -> Tuple[Order, OrderRefund]:
        """Move the money (when needed), then record the refund with its event."""

        now = self._clock()
        # Validate against the order before any money moves.
        order.with_refund_applied(refund.approved(by=actor.actor_id, at=now), at=now, actor_id=actor.actor_id)

        gateway_refund_id = None
        if refund.method == RefundMethod.ORIGINAL_PAYMENT and order.payment_intent_id:
            gateway_refund_id = self._gateway.refund(intent_id=order.payment_intent_id, amount=refund.amount)

        approved = refund.approved(by=actor.actor_id, at=now, gateway_refund_id=gateway_refund_id)
        updated, event = order.with_refund_applied(approved, at=now, actor_id=actor.actor_id)
        self._data.orders.save(updated, [event])
        logger.info(
            "Refund %s of %s applied to order %s; status %s",
            refund.refund_id,
            refund.amount,
            order.order_id,
            updated.status.value,
        )
        return updated, approved
