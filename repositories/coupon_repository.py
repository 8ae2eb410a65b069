"""
Coupon repository (persistence).

Coupons are read-only here; redemptions are written by `create_order_from_cart`
when an order is placed.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional
from uuid import UUID

from supabase import Client

from domain.coupon import Coupon, DiscountType, normalize_code
from repositories.serialization import optional_datetime, optional_decimal

_COUPONS_TABLE: str = "coupons"
_REDEMPTIONS_TABLE: str = "coupon_redemptions"


def _row_to_coupon(row: Mapping[str, Any]) -> Coupon:
    """Convert a Supabase row into a Coupon."""

    return Coupon(
        coupon_id=UUID(str(row["id"])),
        code=normalize_code(str(row["code"])),
        discount_type=DiscountType(str(row["discount_type"])),
        value=optional_decimal(row["value"]),
        is_active=bool(row.get("is_active", True)),
        start_date=optional_datetime(row.get("start_date")),
        expiration_date=optional_datetime(row.get("expiration_date")),
        minimum_purchase=optional_decimal(row.get("minimum_purchase")),
        max_uses_per_user=row.get("max_uses_per_user"),
        is_stackable=bool(row.get("is_stackable", True)),
    )


class SupabaseCouponRepository:
    def __init__(self, client: Client) -> None:
        self._client = client

    def get_by_code(self, code: str) -> Optional[Coupon]:
        response = (
            self._client.table(_COUPONS_TABLE)
            .select("*")
            .eq("code", normalize_code(code))
            .limit(1)
            .execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to get coupon: {error}")

        rows = getattr(response, "data", None) or []
        return _row_to_coupon(rows[0]) if rows else None

    def get_many(self, coupon_ids: Iterable[UUID]) -> Dict[UUID, Coupon]:
        ids = [str(cid) for cid in coupon_ids]
        if not ids:
            return {}
        response = self._client.table(_COUPONS_TABLE).select("*").in_("id", ids).execute()
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to get coupons: {error}")

        rows = getattr(response, "data", None) or []
        coupons = [_row_to_coupon(row) for row in rows]
        return {coupon.coupon_id: coupon for coupon in coupons}

    def count_redemptions(self, coupon_id: UUID, customer_key: str) -> int:
        response = (
            self._client.table(_REDEMPTIONS_TABLE)
            .select("id", count="exact")
            .eq("coupon_id", str(coupon_id))
            .eq("customer_key", customer_key)
            .execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to count coupon redemptions: {error}")

        count = getattr(response, "count", None)
        if count is not None:
            return int(count)
        return len(getattr(response, "data", None) or [])
