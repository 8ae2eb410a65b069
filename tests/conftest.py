"""
Pytest configuration and shared fixtures.

This file adds the parent directory to the Python path so that tests
can import from the domain, repositories, services and api packages, and
provides an engine wired to the in-memory store, a pinned clock, and fake
payment / shipping-rate collaborators.
"""

import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import List, Optional
from uuid import UUID, uuid4

import pytest

# Add the project root to the Python path
# so tests can import domain, repositories, etc.
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from domain.actor import ActorContext  # noqa: E402
from domain.coupon import Coupon, DiscountType  # noqa: E402
from domain.errors import ExternalServiceError  # noqa: E402
from domain.listing import Address, Dimensions, Listing, Store  # noqa: E402
from domain.shipping import RateQuote  # noqa: E402
from repositories.store import DataStore, build_memory_store  # noqa: E402
from services.engine import FulfillmentEngine  # noqa: E402
from services.gateways import PaymentIntent  # noqa: E402
from services.settings import EngineSettings  # noqa: E402

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

CUSTOMER_ID = UUID("00000000-0000-0000-0000-0000000000c1")
OTHER_CUSTOMER_ID = UUID("00000000-0000-0000-0000-0000000000c2")
OWNER_ID = UUID("00000000-0000-0000-0000-0000000000a1")
OTHER_OWNER_ID = UUID("00000000-0000-0000-0000-0000000000a2")
DESTINATION = Address(postal_code="10001", country="US", city="New York", state="NY")


class FakeClock:
    """Callable clock pinned to a moment; tests move it forward explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePaymentGateway:
    def __init__(self) -> None:
        self.intents: List[PaymentIntent] = []
        self.refunds: List[tuple] = []
        self.fail_with: Optional[ExternalServiceError] = None

    def create_payment_intent(self, *, amount, currency, order_id, customer_key) -> PaymentIntent:
        if self.fail_with is not None:
            raise self.fail_with
        n = len(self.intents) + 1
        intent = PaymentIntent(intent_id=f"pi_{n}", client_secret=f"pi_{n}_secret", amount=amount, currency=currency)
        self.intents.append(intent)
        return intent

    def refund(self, *, intent_id, amount) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.refunds.append((intent_id, amount))
        return f"re_{len(self.refunds)}"


class FakeRateProvider:
    def __init__(self) -> None:
        self.calls = 0
        self.failures: List[Exception] = []
        self.quotes = [
            RateQuote(carrier="UPS", service="Ground", amount=Decimal("12.00"), transit_days=4),
            RateQuote(carrier="USPS", service="Priority", amount=Decimal("8.50"), transit_days=2),
        ]

    def quote(self, origin, destination, parcels):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return list(self.quotes)


@dataclass(frozen=True)
class Catalog:
    store: Store
    other_store: Store
    widget: Listing  # $20.00, 10 in stock
    gadget: Listing  # $15.00, 5 in stock
    ebook: Listing  # digital, $10.00, 100 in stock
    foreign: Listing  # other store, $30.00, 5 in stock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(provider_retry_wait_seconds=0)


@pytest.fixture
def data() -> DataStore:
    return build_memory_store()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def provider() -> FakeRateProvider:
    return FakeRateProvider()


@pytest.fixture
def engine(data, gateway, provider, settings, clock) -> FulfillmentEngine:
    return FulfillmentEngine(data, gateway, provider, settings, clock=clock)


@pytest.fixture
def customer() -> ActorContext:
    return ActorContext(account_id=CUSTOMER_ID)


@pytest.fixture
def other_customer() -> ActorContext:
    return ActorContext(account_id=OTHER_CUSTOMER_ID)


@pytest.fixture
def guest() -> ActorContext:
    return ActorContext(device_id="device-guest-1")


@pytest.fixture
def owner() -> ActorContext:
    return ActorContext(account_id=OWNER_ID)


@pytest.fixture
def other_owner() -> ActorContext:
    return ActorContext(account_id=OTHER_OWNER_ID)


@pytest.fixture
def catalog(data, engine, owner, other_owner) -> Catalog:
    store = data.listings.add_store(
        Store(store_id=uuid4(), owner_id=OWNER_ID, name="Maple Goods", origin=Address(postal_code="94107"))
    )
    other_store = data.listings.add_store(
        Store(store_id=uuid4(), owner_id=OTHER_OWNER_ID, name="Birch & Co", origin=Address(postal_code="60601"))
    )
    box = Dimensions(Decimal("12"), Decimal("8"), Decimal("4"))
    widget = data.listings.add_listing(
        Listing(uuid4(), store.store_id, "Widget", Decimal("20.00"), weight=Decimal("2"), dimensions=box)
    )
    gadget = data.listings.add_listing(Listing(uuid4(), store.store_id, "Gadget", Decimal("15.00")))
    ebook = data.listings.add_listing(Listing(uuid4(), store.store_id, "E-book", Decimal("10.00"), is_digital=True))
    foreign = data.listings.add_listing(Listing(uuid4(), other_store.store_id, "Lamp", Decimal("30.00")))

    engine.ledger.create_inventory(owner, widget.listing_id, 10, restock_threshold=2, sku="WID-1")
    engine.ledger.create_inventory(owner, gadget.listing_id, 5)
    engine.ledger.create_inventory(owner, ebook.listing_id, 100)
    engine.ledger.create_inventory(other_owner, foreign.listing_id, 5)
    return Catalog(store, other_store, widget, gadget, ebook, foreign)


@pytest.fixture
def coupons(data):
    """Coupons keyed by code."""

    def add(code, discount_type, value, **kwargs):
        return data.coupons.add(Coupon(uuid4(), code, discount_type, Decimal(value), **kwargs))

    return {
        c.code: c
        for c in (
            add("SAVE10", DiscountType.PERCENTAGE, "10"),
            add("EXTRA10", DiscountType.PERCENTAGE, "10"),
            add("FIVEOFF", DiscountType.FIXED_AMOUNT, "5", minimum_purchase=Decimal("30.00")),
            add("SOLO20", DiscountType.PERCENTAGE, "20", is_stackable=False),
            add("FREESHIP", DiscountType.FREE_SHIPPING, "0"),
            add("ONCE", DiscountType.FIXED_AMOUNT, "3", max_uses_per_user=1),
            add("OLD", DiscountType.PERCENTAGE, "50", expiration_date=NOW - timedelta(days=1)),
        )
    }


@pytest.fixture
def place_order(engine, catalog):
    """
    Build a physical-goods order for `actor`: cart with `quantity` widgets,
    shipping quoted and the cheapest option selected, checked out. Returns the
    order; pass `paid=True` to also run payment.
    """

    def _place(actor, quantity=2, *, paid=False, extra=()):
        cart = engine.get_or_create_cart(actor).data
        engine.add_item(actor, cart.cart_id, catalog.widget.listing_id, quantity)
        for listing, qty in extra:
            engine.add_item(actor, cart.cart_id, listing.listing_id, qty)
        cart = engine.get_shipping_rates(actor, cart.cart_id, DESTINATION).data
        engine.select_shipping_option(actor, cart.cart_id, cart.shipping_options[0].option_id)
        result = engine.checkout(actor, cart.cart_id)
        assert result.ok, result.error
        order = result.data
        if paid:
            order, _ = engine.create_payment_intent(actor, order.order_id).data
            order = engine.record_payment(order.payment_intent_id).data
        return order

    return _place
