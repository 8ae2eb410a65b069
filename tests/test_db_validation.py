"""
Database validation tests.

This module checks a live Supabase project against `sql/schema.sql`:
1. Connection credentials work
2. Required tables exist
3. The repositories can read through PostgREST

Skipped unless SUPABASE_URL and SUPABASE_KEY are set (in the environment or in
the `.env` file at the project root). Run these first when pointing the engine
at a new database.
"""

from __future__ import annotations

import os
from pathlib import Path
from uuid import uuid4

import pytest
from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

pytestmark = pytest.mark.skipif(
    not (os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_KEY")),
    reason="SUPABASE_URL / SUPABASE_KEY not set",
)

REQUIRED_TABLES = [
    "stores",
    "listings",
    "inventory",
    "inventory_transactions",
    "inventory_holds",
    "carts",
    "cart_items",
    "coupons",
    "cart_coupons",
    "cart_shipping_options",
    "cart_events",
    "shipping_rate_cache",
    "orders",
    "order_items",
    "order_shipments",
    "order_refunds",
    "order_notes",
    "order_events",
    "coupon_redemptions",
]


def test_environment_variables_set() -> None:
    supabase_url = os.getenv("SUPABASE_URL")

    assert supabase_url.startswith("https://"), "SUPABASE_URL should start with https://"
    print(f"\n[OK] SUPABASE_URL: {supabase_url[:30]}...")


def test_supabase_client_initialization() -> None:
    from repositories.client import get_supabase

    try:
        client = get_supabase()
    except RuntimeError as e:
        pytest.fail(f"Failed to initialize Supabase client: {e}")

    assert client is get_supabase()


@pytest.mark.parametrize("table", REQUIRED_TABLES)
def test_required_table_exists(table: str) -> None:
    """Verify each table from sql/schema.sql can be queried."""

    from postgrest.exceptions import APIError

    from repositories.client import get_supabase

    try:
        get_supabase().table(table).select("*").limit(0).execute()
    except APIError as e:
        pytest.fail(
            f"'{table}' table does not exist or cannot be accessed: {e}\n"
            f"Apply sql/schema.sql and sql/functions.sql to the project."
        )


def test_repositories_read_through_postgrest() -> None:
    """Unknown ids read back as empty, not as errors."""

    from repositories.client import get_supabase
    from repositories.inventory_repository import SupabaseInventoryRepository
    from repositories.order_repository import SupabaseOrderRepository

    client = get_supabase()

    assert SupabaseInventoryRepository(client).get_record(uuid4()) is None
    assert SupabaseInventoryRepository(client).list_transactions(uuid4()) == []
    assert SupabaseOrderRepository(client).get(uuid4()) is None
    assert SupabaseOrderRepository(client).find_by_payment_intent("pi_does_not_exist") is None
