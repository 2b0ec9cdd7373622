"""Tests for FeedService cache reads and synchronisation."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.credit_bridge.credit.feed import FeedService
from src.credit_bridge.credit.reconciliation import ReconciliationEngine
from src.credit_bridge.credit.schemas import FeedFilter, FeedItemData
from tests.conftest import RETAIL_PRODUCT_ID, make_raw_order


def _item(order_id: int, **overrides) -> FeedItemData:
    data = {
        "order_id": order_id,
        "application_id": f"MI-{order_id}",
        "credit_company": "microinvest",
        "bank_status": "Processing",
        "crm_status": "credit-check",
        "order_status": "new",
    }
    data.update(overrides)
    return FeedItemData(**data)


@pytest.fixture
def engine(crm, providers, repository) -> ReconciliationEngine:
    return ReconciliationEngine(crm, providers, repository, delay=0)


@pytest.fixture
def feed(crm, engine, repository) -> FeedService:
    return FeedService(crm, engine, repository, delay=0)


class TestCachedFeed:
    @pytest.mark.asyncio
    async def test_cached_read_makes_no_remote_calls(self, repository):
        crm = MagicMock()
        engine = MagicMock()
        service = FeedService(crm, engine, repository, delay=0)
        await repository.upsert_feed_item(_item(1))
        await repository.update_last_sync_time()

        cached = await service.get_cached_feed()

        assert cached.count == 1
        assert cached.last_sync is not None
        assert crm.mock_calls == []
        assert engine.mock_calls == []

    @pytest.mark.asyncio
    async def test_archive_filter(self, feed, repository):
        await repository.upsert_feed_item(_item(1))
        await repository.upsert_feed_item(_item(2, order_status="complete"))

        active = await feed.get_cached_feed(FeedFilter(archive=False))
        archived = await feed.get_cached_feed(FeedFilter(archive=True))

        assert [i.order_id for i in active.items] == [1]
        assert [i.order_id for i in archived.items] == [2]

    @pytest.mark.asyncio
    async def test_conditions_filter(self, feed, repository):
        await repository.upsert_feed_item(_item(1, conditions_changed=True))
        await repository.upsert_feed_item(_item(2))

        cached = await feed.get_cached_feed(FeedFilter(conditions_changed=True))

        assert [i.order_id for i in cached.items] == [1]

    @pytest.mark.asyncio
    async def test_remove_feed_item(self, feed, repository):
        await repository.upsert_feed_item(_item(1))
        assert await feed.remove_feed_item(1) is True
        assert await feed.remove_feed_item(1) is False


class TestSyncFeed:
    @pytest.mark.asyncio
    async def test_sync_from_reconciliation_snapshots(self, feed, crm, repository):
        result = await feed.sync_feed_to_database([_item(1), _item(2)])

        assert result.synced == 2
        assert result.failed == 0
        assert result.last_sync is not None
        assert await repository.count_feed_items() == 2
        assert await repository.get_last_sync_time() == result.last_sync

    @pytest.mark.asyncio
    async def test_failed_upsert_counted(self, feed, repository):
        repository.fail_upserts_for.add(2)

        result = await feed.sync_feed_to_database([_item(1), _item(2)])

        assert result.synced == 1
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_read_only_pass_when_no_snapshots(
        self, feed, crm, repository, microinvest_client
    ):
        crm.add(make_raw_order(1, application_id="MI-1", payment_status="credit-check"))
        crm.add(make_raw_order(2, application_id="MI-2", status="complete"))
        microinvest_client.check_application_status.return_value = {
            "status": "Approved",
            "amount": 5000,
            "loanTerm": 6,
            "loanProductID": RETAIL_PRODUCT_ID,
        }

        result = await feed.sync_feed_to_database()

        assert result.synced == 1
        item = await repository.get_feed_item(1)
        assert item.bank_status == "Approved"
        assert item.crm_status == "credit-check"
        assert crm.payment_updates == []
        microinvest_client.check_application_status.assert_awaited_once_with("MI-1")

    @pytest.mark.asyncio
    async def test_stale_items_get_lifecycle_refresh(self, feed, crm, repository):
        await repository.upsert_feed_item(_item(9, bank_status="Approved"))
        crm.add(make_raw_order(9, application_id="MI-9", status="complete", payment_status="paid"))

        result = await feed.sync_feed_to_database([_item(1)])

        assert result.stale_updated == 1
        stale = await repository.get_feed_item(9)
        assert stale.order_status == "complete"
        assert stale.crm_status == "paid"
        assert stale.bank_status == "Approved"

    @pytest.mark.asyncio
    async def test_unparsable_stale_order_does_not_abort_sync(self, feed, crm, repository):
        await repository.upsert_feed_item(_item(8))
        await repository.upsert_feed_item(_item(9))
        crm.add(make_raw_order(8, application_id="MI-8", status="complete", amount="n/a"))
        crm.add(make_raw_order(9, application_id="MI-9", status="complete", payment_status="paid"))

        result = await feed.sync_feed_to_database([])

        assert result.stale_updated == 1
        assert (await repository.get_feed_item(9)).order_status == "complete"
        assert (await repository.get_feed_item(8)).order_status == "new"
        assert result.last_sync is not None
        assert await repository.get_last_sync_time() == result.last_sync

    @pytest.mark.asyncio
    async def test_unchanged_stale_item_left_alone(self, feed, crm, repository):
        await repository.upsert_feed_item(_item(9))
        crm.add(make_raw_order(9, application_id="MI-9", status="new"))

        result = await feed.sync_feed_to_database([])

        assert result.stale_updated == 0

    @pytest.mark.asyncio
    async def test_snapshot_failure_skips_order(self, crm, repository):
        crm.add(make_raw_order(1, application_id="MI-1"))
        crm.add(make_raw_order(2, application_id="MI-2"))
        engine = MagicMock()
        engine.snapshot_order = AsyncMock(side_effect=[RuntimeError("boom"), _item(2)])
        service = FeedService(crm, engine, repository, delay=0)

        snapshots = await service.collect_snapshots()

        assert [s.order_id for s in snapshots] == [2]
