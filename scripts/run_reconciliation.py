#!/usr/bin/env python3
"""CLI script to run one reconciliation cycle outside the API process.

Usage:
    python scripts/run_reconciliation.py
    python scripts/run_reconciliation.py --order-id 12345
    python scripts/run_reconciliation.py --feed-only

Connects to the CRM, providers and database using settings from the
environment or .env file. Without arguments it reconciles every active
application, refreshes the feed cache, and imports CRM change history.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.credit_bridge
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))


async def run(order_id: int | None, feed_only: bool) -> None:
    from src.credit_bridge.config import get_settings
    from src.credit_bridge.core.database import close_db, init_db
    from src.credit_bridge.core.logging import configure_structlog
    from src.credit_bridge.credit.container import build_services

    configure_structlog()
    await init_db()
    services = build_services(get_settings())

    try:
        if order_id is not None:
            result = await services.engine.check_and_update_status(order_id)
            if result is None:
                print(f"Order {order_id}: nothing to reconcile")
            else:
                print(json.dumps(result.model_dump(mode="json"), indent=2))
            return

        if feed_only:
            sync = await services.feed.sync_feed_to_database()
            print(f"Feed synced: {sync.synced} rows, {sync.stale_updated} stale updated")
            return

        batch = await services.scheduler.run_cycle()
        if batch is None:
            print("A reconciliation run is already in progress")
            return

        print(f"Reconciled: {batch.total} orders, {batch.updated} updated, {batch.final} final")
        for error in batch.errors:
            print(f"  order {error.order_id}: {error.error}")
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run credit application reconciliation")
    parser.add_argument("--order-id", type=int, default=None, help="Reconcile a single order")
    parser.add_argument(
        "--feed-only",
        action="store_true",
        help="Only refresh the feed cache with a read-only status pass",
    )
    args = parser.parse_args()
    asyncio.run(run(args.order_id, args.feed_only))


if __name__ == "__main__":
    main()
