"""
Run committed inventory reconciliation for one merchant from the command line.

Talks to Square directly (no Temporal) and writes to the SQLite ledger.

Usage:
    python scripts/reconcile.py M-001
    python scripts/reconcile.py M-001 --show-aggregate
    python scripts/reconcile.py M-001 --invalidate-scope
    python scripts/reconcile.py M-001 --invoice inv-42 --status PAID
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import ReconciliationConfig
from core.observability.logging import configure_logging
from reconciliation.factory import build_square_reconciler


async def run(args: argparse.Namespace) -> dict:
    config = ReconciliationConfig.from_env()
    if args.db:
        config.ledger_db_path = Path(args.db)
    if args.concurrency:
        config.location_concurrency = args.concurrency

    reconciler = await build_square_reconciler(config)
    try:
        if args.invalidate_scope:
            reconciler.invalidate_scope_denial(args.merchant_id)

        if args.invoice:
            output = (await reconciler.apply_invoice_change(
                args.merchant_id,
                args.invoice,
                args.status,
                order_id=args.order,
            )).to_dict()
        else:
            output = (await reconciler.reconcile(args.merchant_id)).to_dict()

        if args.show_aggregate:
            output["aggregate"] = [
                agg.model_dump() for agg in reconciler.store.list_aggregates(args.merchant_id)
            ]
        return output
    finally:
        await reconciler.close()


def main():
    parser = argparse.ArgumentParser(description="Reconcile committed inventory against Square invoices")
    parser.add_argument("merchant_id", help="Merchant to reconcile")
    parser.add_argument("--db", help="Ledger SQLite path (default: LEDGER_DB_PATH or committed_inventory.db)")
    parser.add_argument("--concurrency", type=int, help="Locations searched in parallel")
    parser.add_argument(
        "--invalidate-scope",
        action="store_true",
        help="Forget a cached permission denial before running",
    )
    parser.add_argument(
        "--show-aggregate",
        action="store_true",
        help="Include the reserved-for-sale aggregate in the output",
    )
    parser.add_argument("--invoice", help="Apply a single invoice change instead of a full pass")
    parser.add_argument("--status", help="New invoice status (with --invoice)")
    parser.add_argument("--order", help="Linked order ID (with --invoice)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = parser.parse_args()
    if args.status and not args.invoice:
        parser.error("--status requires --invoice")

    configure_logging(level="DEBUG" if args.verbose else "INFO")
    output = asyncio.run(run(args))
    print(json.dumps(output, indent=2, default=str))


if __name__ == "__main__":
    main()
