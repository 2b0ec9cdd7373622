"""Feed cache synchronisation and reads.

The feed is a database-backed summary of every order with a credit
application. Reads are served from the cache only; the scheduler keeps
it fresh by upserting the snapshots observed during reconciliation and
re-checking the lifecycle of cached rows that fell out of the active set.
"""

from __future__ import annotations

import asyncio

import structlog

from src.credit_bridge.credit.crm.adapter import CRMClient
from src.credit_bridge.credit.reconciliation import ReconciliationEngine
from src.credit_bridge.credit.repository import FeedRepository
from src.credit_bridge.credit.schemas import (
    ARCHIVED_ORDER_STATUSES,
    CachedFeed,
    FeedFilter,
    FeedItemData,
    FeedSyncResult,
)

logger = structlog.get_logger(__name__)


class FeedService:
    """Keeps the feed cache in step with the CRM and the providers.

    Args:
        crm: CRM client.
        engine: Reconciliation engine, used for read-only status snapshots.
        repository: Feed store.
        delay: Seconds to pause between orders in a read-only pass.
    """

    def __init__(
        self,
        crm: CRMClient,
        engine: ReconciliationEngine,
        repository: FeedRepository,
        delay: float = 0.2,
    ) -> None:
        self._crm = crm
        self._engine = engine
        self._repository = repository
        self._delay = delay

    async def collect_snapshots(self) -> list[FeedItemData]:
        """Read-only status pass over every active, non-archived order."""
        orders = await self._crm.get_orders_with_active_applications()
        snapshots: list[FeedItemData] = []
        for raw in orders:
            order_id = raw.get("id")
            if raw.get("status") in ARCHIVED_ORDER_STATUSES:
                continue
            try:
                snapshot = await self._engine.snapshot_order(raw)
            except Exception as exc:
                logger.error("feed.snapshot_failed", order_id=order_id, error=str(exc))
                continue
            if snapshot is not None:
                snapshots.append(snapshot)
            await asyncio.sleep(self._delay)
        logger.info("feed.snapshots_collected", count=len(snapshots))
        return snapshots

    async def sync_feed_to_database(
        self, snapshots: list[FeedItemData] | None = None
    ) -> FeedSyncResult:
        """Refresh the feed cache.

        Args:
            snapshots: Rows observed by a reconciliation pass. When omitted,
                a read-only status pass collects them.

        Returns:
            FeedSyncResult with counts and the new last-sync time.
        """
        logger.info("feed.sync_started", from_reconciliation=snapshots is not None)
        if snapshots is None:
            snapshots = await self.collect_snapshots()

        written = await self._repository.upsert_many(snapshots)
        active_ids = {item.order_id for item in snapshots}
        stale_updated = await self._refresh_stale_items(active_ids)
        last_sync = await self._repository.update_last_sync_time()

        result = FeedSyncResult(
            synced=len(written),
            stale_updated=stale_updated,
            failed=len(snapshots) - len(written),
            last_sync=last_sync,
        )
        logger.info(
            "feed.sync_completed",
            synced=result.synced,
            stale_updated=result.stale_updated,
            failed=result.failed,
        )
        return result

    async def _refresh_stale_items(self, active_ids: set[int]) -> int:
        """Re-check the lifecycle of cached rows no longer in the active set.

        Only order status and payment status are refreshed; bank status
        is left as last observed.
        """
        cached = await self._repository.get_all_feed_items(FeedFilter(archive=False))
        updated = 0
        for item in cached:
            if item.order_id in active_ids:
                continue
            try:
                raw = await self._crm.get_order(item.order_id)
                if raw is None or raw.get("status") == item.order_status:
                    continue
                payment = self._crm.find_credit_payment(raw)
                await self._repository.upsert_feed_item(
                    item.model_copy(
                        update={
                            "order_status": raw.get("status"),
                            "crm_status": payment.status if payment else item.crm_status,
                        }
                    )
                )
                updated += 1
                logger.debug(
                    "feed.stale_item_updated",
                    order_id=item.order_id,
                    old_status=item.order_status,
                    new_status=raw.get("status"),
                )
            except Exception as exc:
                logger.warning("feed.stale_item_failed", order_id=item.order_id, error=str(exc))
        return updated

    async def get_cached_feed(self, filters: FeedFilter | None = None) -> CachedFeed:
        """Serve the feed from cache; makes no CRM or provider calls."""
        items = await self._repository.get_all_feed_items(filters)
        last_sync = await self._repository.get_last_sync_time()
        return CachedFeed(items=items, last_sync=last_sync, count=len(items))

    async def remove_feed_item(self, order_id: int) -> bool:
        removed = await self._repository.delete_feed_item(order_id)
        logger.info("feed.item_removed", order_id=order_id, removed=removed)
        return removed
