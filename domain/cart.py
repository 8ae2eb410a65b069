"""
Domain: Cart aggregate.

Contract implemented here:
- A cart belongs to exactly one of account_id (registered) or device_id (guest).
- Line items snapshot the listing price when first added; later catalog price
  changes do not affect the line.
- Totals are derived, never set directly:
    subtotal       = Σ price_snapshot × quantity
    total_discounts= Σ coupon discounts, evaluated in application_order
    total_tax      = tax_rate × (subtotal − merchandise discounts)
    total_price    = subtotal − total_discounts + total_shipping + total_tax
- At most one shipping option is selected.
- Only active carts change; converted carts are immutable.
- `version` counts stored writes; a save based on an older version is refused
  so that two concurrent changes cannot overwrite each other.

Every transition returns a new Cart; callers persist the result only after the
whole operation (reservation, totals, event) has succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple
from uuid import UUID, uuid4

from .coupon import Coupon, DiscountType, compute_discount
from .errors import InvariantViolationError, NotFoundError, ValidationError
from .listing import Listing
from .money import ZERO, money_sum, to_money
from .time import require_utc_timestamp

STALE_CART_MESSAGE = "Cart was modified by another request; reload it and try again"


class CartStatus(str, Enum):
    ACTIVE = "active"
    CONVERTED = "converted"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


class CartEventType(str, Enum):
    ADD_ITEM = "add_item"
    UPDATE_QUANTITY = "update_quantity"
    REMOVE_ITEM = "remove_item"
    APPLY_COUPON = "apply_coupon"
    REMOVE_COUPON = "remove_coupon"
    SELECT_SHIPPING = "select_shipping"
    CLEAR_CART = "clear_cart"
    EXPIRE = "expire"


@dataclass(frozen=True, slots=True)
class CartItem:
    cart_item_id: UUID
    listing_id: UUID
    store_id: UUID
    title: str
    quantity: int
    price_snapshot: Decimal
    added_at: datetime
    updated_at: datetime
    is_digital: bool = False
    is_gift: bool = False
    selected_options: Mapping[str, str] = field(default_factory=dict)

    @property
    def line_total(self) -> Decimal:
        return to_money(self.price_snapshot * self.quantity)


@dataclass(frozen=True, slots=True)
class CartCoupon:
    coupon_id: UUID
    code: str
    discount_type: DiscountType
    application_order: int
    applied_discount: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class CartShippingOption:
    option_id: UUID
    carrier: str
    service: str
    amount: Decimal
    transit_days_min: Optional[int] = None
    transit_days_max: Optional[int] = None
    is_selected: bool = False


@dataclass(frozen=True, slots=True)
class CartEvent:
    event_id: UUID
    cart_id: UUID
    event_type: CartEventType
    payload: Dict[str, Any]
    created_at: datetime
    actor_id: Optional[UUID] = None


@dataclass(frozen=True, slots=True)
class Cart:
    cart_id: UUID
    status: CartStatus
    currency: str
    created_at: datetime
    updated_at: datetime
    account_id: Optional[UUID] = None
    device_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    items: Tuple[CartItem, ...] = ()
    coupons: Tuple[CartCoupon, ...] = ()
    shipping_options: Tuple[CartShippingOption, ...] = ()
    subtotal: Decimal = ZERO
    total_discounts: Decimal = ZERO
    total_shipping: Decimal = ZERO
    total_tax: Decimal = ZERO
    total_price: Decimal = ZERO
    version: int = 0

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        require_utc_timestamp("updated_at", self.updated_at)
        if self.expires_at is not None:
            require_utc_timestamp("expires_at", self.expires_at)
        if (self.account_id is None) == (self.device_id is None):
            raise ValueError("Cart must have exactly one of account_id or device_id")
        if sum(1 for option in self.shipping_options if option.is_selected) > 1:
            raise ValueError("At most one shipping option can be selected")

    # -- queries -----------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.status == CartStatus.ACTIVE

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def is_digital_only(self) -> bool:
        return bool(self.items) and all(item.is_digital for item in self.items)

    @property
    def merchandise_discounts(self) -> Decimal:
        return money_sum(
            c.applied_discount for c in self.coupons if c.discount_type != DiscountType.FREE_SHIPPING
        )

    @property
    def selected_shipping(self) -> Optional[CartShippingOption]:
        for option in self.shipping_options:
            if option.is_selected:
                return option
        return None

    def find_item(self, listing_id: UUID) -> Optional[CartItem]:
        for item in self.items:
            if item.listing_id == listing_id:
                return item
        return None

    def item_quantity(self, listing_id: UUID) -> int:
        item = self.find_item(listing_id)
        return item.quantity if item is not None else 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def require_active(self) -> None:
        if not self.is_active:
            raise ValidationError(f"Cart is {self.status.value} and can no longer be changed")

    # -- transitions -------------------------------------------------------

    def with_item(
        self,
        listing: Listing,
        quantity: int,
        *,
        at: datetime,
        is_gift: bool = False,
        selected_options: Optional[Mapping[str, str]] = None,
    ) -> "Cart":
        """Add `quantity` units; an existing line keeps its original price snapshot."""

        self.require_active()
        _require_quantity(quantity)
        existing = self.find_item(listing.listing_id)
        if existing is not None:
            return self.with_item_quantity(listing.listing_id, existing.quantity + quantity, at=at)

        item = CartItem(
            cart_item_id=uuid4(),
            listing_id=listing.listing_id,
            store_id=listing.store_id,
            title=listing.title,
            quantity=quantity,
            price_snapshot=to_money(listing.price),
            added_at=at,
            updated_at=at,
            is_digital=listing.is_digital,
            is_gift=is_gift,
            selected_options=dict(selected_options or {}),
        )
        return replace(self, items=self.items + (item,), shipping_options=(), updated_at=at)

    def with_item_quantity(self, listing_id: UUID, quantity: int, *, at: datetime) -> "Cart":
        self.require_active()
        _require_quantity(quantity)
        if self.find_item(listing_id) is None:
            raise NotFoundError("Cart item", listing_id)
        items = tuple(
            replace(item, quantity=quantity, updated_at=at) if item.listing_id == listing_id else item
            for item in self.items
        )
        return replace(self, items=items, shipping_options=(), updated_at=at)

    def without_item(self, listing_id: UUID, *, at: datetime) -> "Cart":
        self.require_active()
        if self.find_item(listing_id) is None:
            raise NotFoundError("Cart item", listing_id)
        items = tuple(item for item in self.items if item.listing_id != listing_id)
        return replace(self, items=items, shipping_options=(), updated_at=at)

    def cleared(self, *, at: datetime) -> "Cart":
        """Drop every line, coupon and shipping quote."""

        self.require_active()
        return replace(self, items=(), coupons=(), shipping_options=(), updated_at=at)

    def with_coupon(self, coupon: Coupon, *, at: datetime) -> "Cart":
        self.require_active()
        next_order = max((c.application_order for c in self.coupons), default=0) + 1
        applied = CartCoupon(
            coupon_id=coupon.coupon_id,
            code=coupon.code,
            discount_type=coupon.discount_type,
            application_order=next_order,
        )
        return replace(self, coupons=self.coupons + (applied,), updated_at=at)

    def without_coupon(self, code: str, *, at: datetime) -> "Cart":
        self.require_active()
        remaining = tuple(c for c in self.coupons if c.code != code)
        if len(remaining) == len(self.coupons):
            raise NotFoundError("Cart coupon", code)
        return replace(self, coupons=remaining, updated_at=at)

    def with_shipping_options(self, options: Tuple[CartShippingOption, ...], *, at: datetime) -> "Cart":
        self.require_active()
        return replace(self, shipping_options=options, updated_at=at)

    def with_selected_shipping(self, option_id: UUID, *, at: datetime) -> "Cart":
        self.require_active()
        if not any(option.option_id == option_id for option in self.shipping_options):
            raise NotFoundError("Shipping option", option_id)
        options = tuple(
            replace(option, is_selected=option.option_id == option_id) for option in self.shipping_options
        )
        return replace(self, shipping_options=options, updated_at=at)

    def with_status(self, status: CartStatus, *, at: datetime) -> "Cart":
        return replace(self, status=status, updated_at=at)

    def recalculated(
        self,
        coupons_by_id: Mapping[UUID, Coupon],
        *,
        tax_rate: Decimal,
        now: datetime,
    ) -> "Cart":
        """
        Recompute every derived total from items, coupons and shipping.

        Coupons that no longer qualify (expired, below minimum) stay attached
        but discount nothing until they qualify again.
        """

        subtotal = money_sum(item.line_total for item in self.items)
        selected = self.selected_shipping
        shipping = to_money(selected.amount) if selected is not None else ZERO

        merchandise_discount = ZERO
        shipping_discount = ZERO
        coupons = []
        for applied in sorted(self.coupons, key=lambda c: c.application_order):
            coupon = coupons_by_id.get(applied.coupon_id)
            discount = ZERO
            if coupon is not None and coupon.is_live(now) and coupon.meets_minimum(subtotal):
                if coupon.discount_type == DiscountType.FREE_SHIPPING:
                    discount = compute_discount(coupon, ZERO, shipping - shipping_discount)
                    shipping_discount += discount
                else:
                    discount = compute_discount(coupon, subtotal - merchandise_discount, ZERO)
                    merchandise_discount += discount
            coupons.append(replace(applied, applied_discount=discount))

        taxable = max(subtotal - merchandise_discount, ZERO)
        tax = to_money(taxable * tax_rate)
        total_discounts = to_money(merchandise_discount + shipping_discount)
        return replace(
            self,
            coupons=tuple(coupons),
            subtotal=subtotal,
            total_discounts=total_discounts,
            total_shipping=shipping,
            total_tax=tax,
            total_price=to_money(subtotal - total_discounts + shipping + tax),
        )

    def verify_totals(self) -> None:
        """Stored totals must agree with the line items they were derived from."""

        expected_subtotal = money_sum(item.line_total for item in self.items)
        expected_total = to_money(
            self.subtotal - self.total_discounts + self.total_shipping + self.total_tax
        )
        if self.subtotal != expected_subtotal or self.total_price != expected_total:
            raise InvariantViolationError(
                f"Cart {self.cart_id} totals are inconsistent "
                f"(subtotal={self.subtotal}, expected {expected_subtotal}; "
                f"total={self.total_price}, expected {expected_total})"
            )


def new_cart(
    *,
    currency: str,
    at: datetime,
    account_id: Optional[UUID] = None,
    device_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> Cart:
    return Cart(
        cart_id=uuid4(),
        status=CartStatus.ACTIVE,
        currency=currency,
        created_at=at,
        updated_at=at,
        account_id=account_id,
        device_id=device_id,
        expires_at=expires_at,
    )


def cart_event(
    cart: Cart,
    event_type: CartEventType,
    payload: Dict[str, Any],
    *,
    at: datetime,
    actor_id: Optional[UUID] = None,
) -> CartEvent:
    return CartEvent(
        event_id=uuid4(),
        cart_id=cart.cart_id,
        event_type=event_type,
        payload=payload,
        created_at=at,
        actor_id=actor_id,
    )


def _require_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Quantity must be a positive integer")
