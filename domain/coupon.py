"""
Domain: Coupons and the coupon evaluator (pure).

Rules, applied in order; the first failing rule short-circuits:
1. Coupon is active and `now` lies within [start_date, expiration_date).
2. Coupon is not already applied to this cart.
3. Cart subtotal >= minimum_purchase, when set.
4. Prior redemptions by this customer < max_uses_per_user, when set.
Stacking: a non-stackable coupon can only be alone on a cart, in either order.

Discounts:
- percentage:    base × value / 100
- fixed_amount:  min(value, base)   (never below zero)
- free_shipping: the cart's shipping total (merchandise is untouched)

`base` is the cart subtotal minus the merchandise discounts of coupons applied
earlier, so two 10% coupons on $100 yield $81, not $80.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from .money import ZERO, percent_of, to_money
from .time import require_utc_timestamp

if TYPE_CHECKING:
    from .cart import Cart


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SHIPPING = "free_shipping"


@dataclass(frozen=True, slots=True)
class Coupon:
    coupon_id: UUID
    code: str
    discount_type: DiscountType
    value: Decimal
    is_active: bool = True
    start_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None
    minimum_purchase: Optional[Decimal] = None
    max_uses_per_user: Optional[int] = None
    is_stackable: bool = True

    def __post_init__(self) -> None:
        if self.start_date is not None:
            require_utc_timestamp("start_date", self.start_date)
        if self.expiration_date is not None:
            require_utc_timestamp("expiration_date", self.expiration_date)
        if self.value < 0:
            raise ValueError("coupon value must be >= 0")
        if self.discount_type == DiscountType.PERCENTAGE and self.value > 100:
            raise ValueError("percentage coupons cannot exceed 100")

    def is_live(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.start_date is not None and now < self.start_date:
            return False
        if self.expiration_date is not None and now >= self.expiration_date:
            return False
        return True

    def meets_minimum(self, subtotal: Decimal) -> bool:
        return self.minimum_purchase is None or subtotal >= self.minimum_purchase


@dataclass(frozen=True, slots=True)
class CouponEvaluation:
    applicable: bool
    discount_amount: Decimal
    reason: Optional[str] = None


def normalize_code(code: str) -> str:
    return code.strip().upper()


def compute_discount(coupon: Coupon, base: Decimal, shipping: Decimal) -> Decimal:
    """Discount produced by `coupon` against a merchandise base and shipping total."""

    base = max(base, ZERO)
    if coupon.discount_type == DiscountType.PERCENTAGE:
        return min(percent_of(base, coupon.value), base)
    if coupon.discount_type == DiscountType.FIXED_AMOUNT:
        return to_money(min(coupon.value, base))
    return to_money(max(shipping, ZERO))


def evaluate(
    coupon: Coupon,
    cart: "Cart",
    *,
    prior_uses: int,
    now: datetime,
    coupons_by_id: Optional[dict] = None,
) -> CouponEvaluation:
    """
    Decide whether `coupon` can be added to `cart` and what it would discount.

    `coupons_by_id` resolves the coupons already on the cart, needed to honour
    a non-stackable coupon that is already applied.
    """

    if not coupon.is_live(now):
        return CouponEvaluation(False, ZERO, "Coupon is not active")

    if any(applied.coupon_id == coupon.coupon_id for applied in cart.coupons):
        return CouponEvaluation(False, ZERO, "Coupon already applied to this cart")

    if not coupon.meets_minimum(cart.subtotal):
        return CouponEvaluation(
            False, ZERO, f"Minimum purchase of {coupon.minimum_purchase} required"
        )

    if coupon.max_uses_per_user is not None and prior_uses >= coupon.max_uses_per_user:
        return CouponEvaluation(False, ZERO, "Coupon usage limit reached")

    if cart.coupons:
        if not coupon.is_stackable:
            return CouponEvaluation(False, ZERO, "Coupon cannot be combined with other coupons")
        for applied in cart.coupons:
            existing = (coupons_by_id or {}).get(applied.coupon_id)
            if existing is not None and not existing.is_stackable:
                return CouponEvaluation(
                    False, ZERO, f"Coupon {existing.code} cannot be combined with other coupons"
                )

    base = cart.subtotal - cart.merchandise_discounts
    return CouponEvaluation(True, compute_discount(coupon, base, cart.total_shipping))


@dataclass(frozen=True, slots=True)
class CouponRedemption:
    """One use of a coupon by one customer, recorded when an order is placed."""

    coupon_id: UUID
    customer_key: str
    order_id: UUID
    redeemed_at: datetime

    def __post_init__(self) -> None:
        require_utc_timestamp("redeemed_at", self.redeemed_at)
