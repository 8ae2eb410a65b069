"""
API Request and Response Models.

Pydantic models for validating API requests and serializing responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from domain.cart import Cart
from domain.inventory import InventoryRecord
from domain.listing import Address
from domain.order import Order, OrderEvent, OrderNoteType
from domain.refund import OrderRefund, RefundMethod, RefundReasonCategory


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Typed error body returned for every failed operation."""
    kind: str
    message: str
    details: dict = Field(default_factory=dict)


# ============================================================================
# Cart Models
# ============================================================================

class AddItemRequest(BaseModel):
    """Request to add a listing to the cart."""
    listing_id: UUID
    quantity: int = Field(..., ge=1, description="Units to add")
    is_gift: bool = False
    selected_options: Dict[str, str] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "listing_id": "123e4567-e89b-12d3-a456-426614174000",
                "quantity": 2,
                "is_gift": False,
                "selected_options": {"size": "M"}
            }
        }


class UpdateQuantityRequest(BaseModel):
    """Set the quantity of a line; 0 removes it."""
    quantity: int = Field(..., ge=0)


class CouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class CartItemResponse(BaseModel):
    listing_id: UUID
    store_id: UUID
    title: str
    quantity: int
    price_snapshot: Decimal
    line_total: Decimal
    is_digital: bool
    is_gift: bool


class CartCouponResponse(BaseModel):
    code: str
    discount_type: str
    application_order: int
    applied_discount: Decimal


class ShippingOptionResponse(BaseModel):
    option_id: UUID
    carrier: str
    service: str
    amount: Decimal
    transit_days_min: Optional[int] = None
    transit_days_max: Optional[int] = None
    is_selected: bool


class CartResponse(BaseModel):
    """Cart with its lines, coupons, shipping options and derived totals."""
    cart_id: UUID
    status: str
    currency: str
    account_id: Optional[UUID] = None
    device_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    items: List[CartItemResponse]
    coupons: List[CartCouponResponse]
    shipping_options: List[ShippingOptionResponse]
    subtotal: Decimal
    total_discounts: Decimal
    total_shipping: Decimal
    total_tax: Decimal
    total_price: Decimal

    @classmethod
    def from_cart(cls, cart: Cart) -> "CartResponse":
        return cls(
            cart_id=cart.cart_id,
            status=cart.status.value,
            currency=cart.currency,
            account_id=cart.account_id,
            device_id=cart.device_id,
            expires_at=cart.expires_at,
            items=[
                CartItemResponse(
                    listing_id=i.listing_id,
                    store_id=i.store_id,
                    title=i.title,
                    quantity=i.quantity,
                    price_snapshot=i.price_snapshot,
                    line_total=i.line_total,
                    is_digital=i.is_digital,
                    is_gift=i.is_gift,
                )
                for i in cart.items
            ],
            coupons=[
                CartCouponResponse(
                    code=c.code,
                    discount_type=c.discount_type.value,
                    application_order=c.application_order,
                    applied_discount=c.applied_discount,
                )
                for c in cart.coupons
            ],
            shipping_options=[
                ShippingOptionResponse(
                    option_id=o.option_id,
                    carrier=o.carrier,
                    service=o.service,
                    amount=o.amount,
                    transit_days_min=o.transit_days_min,
                    transit_days_max=o.transit_days_max,
                    is_selected=o.is_selected,
                )
                for o in cart.shipping_options
            ],
            subtotal=cart.subtotal,
            total_discounts=cart.total_discounts,
            total_shipping=cart.total_shipping,
            total_tax=cart.total_tax,
            total_price=cart.total_price,
        )


# ============================================================================
# Shipping Models
# ============================================================================

class AddressModel(BaseModel):
    postal_code: str = Field(..., min_length=1)
    country: str = "US"
    name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None

    def to_address(self) -> Address:
        return Address(
            postal_code=self.postal_code,
            country=self.country,
            name=self.name,
            street=self.street,
            city=self.city,
            state=self.state,
        )


class ShippingRatesRequest(BaseModel):
    """Destination to quote the cart against."""
    destination: AddressModel

    class Config:
        json_schema_extra = {
            "example": {
                "destination": {"postal_code": "10001", "country": "US", "city": "New York", "state": "NY"}
            }
        }


class SelectShippingRequest(BaseModel):
    option_id: UUID


# ============================================================================
# Order Models
# ============================================================================

class CheckoutRequest(BaseModel):
    cart_id: UUID


class OrderItemResponse(BaseModel):
    order_item_id: UUID
    listing_id: UUID
    title: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    is_digital: bool
    refund_status: str
    refund_amount: Decimal


class ShipmentResponse(BaseModel):
    shipment_id: UUID
    carrier: str
    tracking_number: str
    tracking_url: Optional[str] = None
    method: str
    status: str
    created_at: datetime
    delivered_at: Optional[datetime] = None


class RefundResponse(BaseModel):
    refund_id: UUID
    order_id: UUID
    order_item_id: Optional[UUID] = None
    amount: Decimal
    reason: str
    reason_category: Optional[str] = None
    method: str
    status: str
    created_at: datetime
    processed_at: Optional[datetime] = None

    @classmethod
    def from_refund(cls, refund: OrderRefund) -> "RefundResponse":
        return cls(
            refund_id=refund.refund_id,
            order_id=refund.order_id,
            order_item_id=refund.order_item_id,
            amount=refund.amount,
            reason=refund.reason,
            reason_category=refund.reason_category.value if refund.reason_category else None,
            method=refund.method.value,
            status=refund.status.value,
            created_at=refund.created_at,
            processed_at=refund.processed_at,
        )


class OrderNoteResponse(BaseModel):
    note_id: UUID
    note_type: str
    content: str
    author_id: Optional[UUID] = None
    created_at: datetime


class OrderResponse(BaseModel):
    """Order with its three status axes, frozen totals, shipments and refunds."""
    order_id: UUID
    cart_id: UUID
    store_id: UUID
    status: str
    payment_status: str
    fulfillment_status: str
    currency: str
    subtotal: Decimal
    total_discounts: Decimal
    total_shipping: Decimal
    total_tax: Decimal
    total_price: Decimal
    refund_total: Decimal
    coupon_codes: List[str]
    shipping_carrier: Optional[str] = None
    shipping_service: Optional[str] = None
    items: List[OrderItemResponse]
    shipments: List[ShipmentResponse]
    refunds: List[RefundResponse]
    notes: List[OrderNoteResponse] = Field(default_factory=list)
    created_at: datetime
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            order_id=order.order_id,
            cart_id=order.cart_id,
            store_id=order.store_id,
            status=order.status.value,
            payment_status=order.payment_status.value,
            fulfillment_status=order.fulfillment_status.value,
            currency=order.currency,
            subtotal=order.subtotal,
            total_discounts=order.total_discounts,
            total_shipping=order.total_shipping,
            total_tax=order.total_tax,
            total_price=order.total_price,
            refund_total=order.refund_total,
            coupon_codes=list(order.coupon_codes),
            shipping_carrier=order.shipping_carrier,
            shipping_service=order.shipping_service,
            items=[
                OrderItemResponse(
                    order_item_id=i.order_item_id,
                    listing_id=i.listing_id,
                    title=i.title,
                    quantity=i.quantity,
                    unit_price=i.unit_price,
                    subtotal=i.subtotal,
                    is_digital=i.is_digital,
                    refund_status=i.refund_status,
                    refund_amount=i.refund_amount,
                )
                for i in order.items
            ],
            shipments=[
                ShipmentResponse(
                    shipment_id=s.shipment_id,
                    carrier=s.carrier,
                    tracking_number=s.tracking_number,
                    tracking_url=s.tracking_url,
                    method=s.method,
                    status=s.status.value,
                    created_at=s.created_at,
                    delivered_at=s.delivered_at,
                )
                for s in order.shipments
            ],
            refunds=[RefundResponse.from_refund(r) for r in order.refunds],
            notes=[
                OrderNoteResponse(
                    note_id=n.note_id,
                    note_type=n.note_type.value,
                    content=n.content,
                    author_id=n.author_id,
                    created_at=n.created_at,
                )
                for n in order.notes
            ],
            created_at=order.created_at,
            paid_at=order.paid_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
        )


class OrderEventResponse(BaseModel):
    event_id: UUID
    event_type: str
    payload: dict
    actor_id: Optional[UUID] = None
    created_at: datetime

    @classmethod
    def from_event(cls, event: OrderEvent) -> "OrderEventResponse":
        return cls(
            event_id=event.event_id,
            event_type=event.event_type.value,
            payload=event.payload,
            actor_id=event.actor_id,
            created_at=event.created_at,
        )


class OrderHistoryResponse(BaseModel):
    """Event log plus the status rebuilt from it."""
    events: List[OrderEventResponse]
    status: str
    payment_status: str
    fulfillment_status: str


class ShipmentLine(BaseModel):
    order_item_id: UUID
    quantity: int = Field(..., ge=1)


class CreateShipmentRequest(BaseModel):
    """Ship some or all items; omit `items` to ship everything not yet shipped."""
    carrier: str = Field(..., min_length=1)
    tracking_number: str = Field(..., min_length=1)
    tracking_url: Optional[str] = None
    method: str = "standard"
    items: List[ShipmentLine] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "carrier": "USPS",
                "tracking_number": "9400100000000000000000",
                "method": "standard",
                "items": []
            }
        }


class ConfirmDeliveryRequest(BaseModel):
    delivered_at: Optional[datetime] = None


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class HoldOrderRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)


class AddOrderNoteRequest(BaseModel):
    """Internal notes are visible to the store owner only."""
    content: str = Field(..., min_length=1, max_length=2000)
    note_type: OrderNoteType = OrderNoteType.CUSTOMER


# ============================================================================
# Payment Models
# ============================================================================

class PaymentIntentResponse(BaseModel):
    order_id: UUID
    intent_id: str
    client_secret: str
    amount: Decimal
    currency: str


class PaymentWebhookRequest(BaseModel):
    """Payment gateway callback."""
    intent_id: str = Field(..., min_length=1)
    status: str = Field(..., pattern="^(succeeded|failed)$")
    message: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {"intent_id": "pi_3Nxyz", "status": "succeeded"}
        }


# ============================================================================
# Refund Models
# ============================================================================

class RefundRequest(BaseModel):
    """Customer refund request, or a refund issued directly by the store owner."""
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=10, max_length=1000)
    order_item_id: Optional[UUID] = None
    method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT
    reason_category: Optional[RefundReasonCategory] = None


class RestockRequest(BaseModel):
    order_item_id: UUID
    quantity: int = Field(..., ge=1)


# ============================================================================
# Inventory Models
# ============================================================================

class CreateInventoryRequest(BaseModel):
    listing_id: UUID
    quantity_available: int = Field(..., ge=0)
    restock_threshold: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None


class AdjustInventoryRequest(BaseModel):
    """Set quantity_available to an absolute value."""
    quantity_available: int = Field(..., ge=0)
    notes: Optional[str] = None


class InventoryResponse(BaseModel):
    listing_id: UUID
    quantity_available: int
    quantity_reserved: int
    available_to_purchase: int
    stock_status: str
    restock_threshold: Optional[int] = None
    sku: Optional[str] = None
    last_restock_date: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: InventoryRecord) -> "InventoryResponse":
        return cls(
            listing_id=record.listing_id,
            quantity_available=record.quantity_available,
            quantity_reserved=record.quantity_reserved,
            available_to_purchase=record.available_to_purchase,
            stock_status=record.stock_status.value,
            restock_threshold=record.restock_threshold,
            sku=record.sku,
            last_restock_date=record.last_restock_date,
        )
