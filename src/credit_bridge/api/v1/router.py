"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.credit_bridge.api.v1 import credit, feed, health, webhooks

router = APIRouter()

router.include_router(health.router)
router.include_router(credit.router)
router.include_router(feed.router)
router.include_router(webhooks.router)
