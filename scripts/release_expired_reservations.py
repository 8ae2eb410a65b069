#!/usr/bin/env python3
"""
Release Expired Reservations

Sweeps the Supabase store for reservations nobody will complete:
- guest carts whose `expires_at` has passed are expired and their holds released
- unpaid orders older than the checkout session TTL are cancelled and their
  holds released

Meant to run on a schedule (cron, scheduled job).

Usage:
    python release_expired_reservations.py
    python release_expired_reservations.py --checkout-ttl-minutes 60
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from datetime import timedelta
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from services.engine import build_engine
from services.settings import EngineSettings


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Release inventory held by expired guest carts and abandoned unpaid orders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the sweep with the configured TTLs
  python release_expired_reservations.py

  # Give customers an hour to pay before their order is cancelled
  python release_expired_reservations.py --checkout-ttl-minutes 60
        """
    )

    parser.add_argument(
        "--checkout-ttl-minutes",
        type=float,
        help="Override FULFILLMENT_CHECKOUT_TTL_MINUTES for this run"
    )

    args = parser.parse_args()

    settings = EngineSettings.from_env()
    if args.checkout_ttl_minutes is not None:
        if args.checkout_ttl_minutes <= 0:
            print("ERROR: --checkout-ttl-minutes must be > 0", file=sys.stderr)
            return 2
        settings = dataclasses.replace(settings, checkout_session_ttl=timedelta(minutes=args.checkout_ttl_minutes))
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        engine = build_engine(settings)
        result = engine.release_expired_reservations()
        if not result.ok:
            print(f"ERROR: {result.error.message}", file=sys.stderr)
            return 1

        report = result.data
        print("=" * 60)
        print("RESERVATION SWEEP")
        print("=" * 60)
        print(f"Expired guest carts:      {len(report.expired_cart_ids)}")
        print(f"Cancelled unpaid orders:  {len(report.cancelled_order_ids)}")
        print("=" * 60)
        return 0

    except KeyboardInterrupt:
        print("\n\nSweep interrupted by user")
        return 130

    except Exception as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
