"""REST API endpoints for the cached application feed."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.credit_bridge.api.deps import get_feed
from src.credit_bridge.credit.feed import FeedService
from src.credit_bridge.credit.schemas import FeedFilter

router = APIRouter(prefix="/api/v1/feed", tags=["feed"])


@router.get("")
async def get_feed_items(
    archive: bool = Query(default=False),
    bank_status: str | None = Query(default=None),
    credit_company: str | None = Query(default=None),
    conditions_changed: bool | None = Query(default=None),
    feed: FeedService = Depends(get_feed),
) -> dict[str, Any]:
    """Feed rows from cache. Defaults to the active (non-archived) view."""
    cached = await feed.get_cached_feed(
        FeedFilter(
            archive=archive,
            bank_status=bank_status,
            credit_company=credit_company,
            conditions_changed=conditions_changed,
        )
    )
    return {"success": True, "cached": True, **cached.model_dump(mode="json")}


@router.post("/sync")
async def sync_feed(feed: FeedService = Depends(get_feed)) -> dict[str, Any]:
    """Refresh the cache with a read-only status pass."""
    result = await feed.sync_feed_to_database()
    return {"success": True, **result.model_dump(mode="json")}


@router.delete("/{order_id}")
async def remove_feed_item(order_id: int, feed: FeedService = Depends(get_feed)) -> dict[str, Any]:
    if not await feed.remove_feed_item(order_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Feed item not found")
    return {"success": True, "order_id": order_id}
