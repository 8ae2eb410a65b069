#!/usr/bin/env python3
"""
Inventory Reconciliation

Replays each listing's inventory transaction log and compares the result with
the stored inventory record. Mismatches are reported, never repaired.

Exit codes:
    0  every checked listing agrees with its log
    1  a listing disagrees with its log (or the check could not run)

Usage:
    python reconcile_inventory.py
    python reconcile_inventory.py --listing-id 123e4567-e89b-12d3-a456-426614174000
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from uuid import UUID

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from domain.errors import InvariantViolationError
from services.engine import build_engine
from services.settings import EngineSettings


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Check inventory records against their transaction logs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check every listing with inventory
  python reconcile_inventory.py

  # Check a single listing
  python reconcile_inventory.py --listing-id 123e4567-e89b-12d3-a456-426614174000
        """
    )

    parser.add_argument(
        "--listing-id",
        "-l",
        type=UUID,
        help="Only reconcile this listing"
    )

    args = parser.parse_args()

    settings = EngineSettings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        engine = build_engine(settings)
        result = engine.reconcile_inventory(args.listing_id)
        if not result.ok:
            print(f"ERROR: {result.error.message}", file=sys.stderr)
            return 1

        reports = result.data if args.listing_id is None else [result.data]
        print("=" * 60)
        print("INVENTORY RECONCILIATION")
        print("=" * 60)
        for report in reports:
            record = report.record
            print(
                f"✓ {report.listing_id}: available={record.quantity_available} "
                f"reserved={record.quantity_reserved} ({report.transaction_count} transactions)"
            )
        print("-" * 60)
        print(f"Listings checked: {len(reports)}")
        print("=" * 60)
        return 0

    except InvariantViolationError as e:
        print(f"\nMISMATCH: {e.message}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\n\nReconciliation interrupted by user")
        return 130

    except Exception as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
