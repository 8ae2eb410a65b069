"""
Domain: Order refunds.

A refund requested by the customer waits in `pending` for the store owner; a
refund issued by the store owner is `approved` and applied immediately.
Refunds never put goods back into inventory; restocking returned items is a
separate, explicit operation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from .errors import ValidationError
from .time import require_utc_timestamp

REASON_MIN_LENGTH = 10
REASON_MAX_LENGTH = 1000


class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RefundMethod(str, Enum):
    ORIGINAL_PAYMENT = "original_payment"
    STORE_CREDIT = "store_credit"
    EXCHANGE = "exchange"
    GIFT_CARD = "gift_card"


class RefundReasonCategory(str, Enum):
    DEFECTIVE = "defective"
    NOT_AS_DESCRIBED = "not_as_described"
    WRONG_ITEM = "wrong_item"
    SHIPPING_DAMAGE = "shipping_damage"
    CHANGED_MIND = "changed_mind"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class OrderRefund:
    refund_id: UUID
    order_id: UUID
    amount: Decimal
    reason: str
    method: RefundMethod
    status: RefundStatus
    created_at: datetime
    order_item_id: Optional[UUID] = None
    reason_category: Optional[RefundReasonCategory] = None
    requested_by: Optional[UUID] = None
    processed_by: Optional[UUID] = None
    processed_at: Optional[datetime] = None
    gateway_refund_id: Optional[str] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if self.processed_at is not None:
            require_utc_timestamp("processed_at", self.processed_at)

    @property
    def is_pending(self) -> bool:
        return self.status == RefundStatus.PENDING

    def approved(
        self, *, by: Optional[UUID], at: datetime, gateway_refund_id: Optional[str] = None
    ) -> "OrderRefund":
        return replace(
            self,
            status=RefundStatus.APPROVED,
            processed_by=by,
            processed_at=at,
            gateway_refund_id=gateway_refund_id,
        )

    def rejected(self, *, by: Optional[UUID], at: datetime) -> "OrderRefund":
        return replace(self, status=RefundStatus.REJECTED, processed_by=by, processed_at=at)


def validate_reason(reason: str) -> str:
    text = (reason or "").strip()
    if not REASON_MIN_LENGTH <= len(text) <= REASON_MAX_LENGTH:
        raise ValidationError(
            f"Refund reason must be between {REASON_MIN_LENGTH} and {REASON_MAX_LENGTH} characters"
        )
    return text
