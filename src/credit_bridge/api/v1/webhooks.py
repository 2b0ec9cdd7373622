"""Provider webhook endpoints.

Iute calls /api/v1/webhooks/iute/confirm when a loan is issued and
/api/v1/webhooks/iute/cancel when the customer or Iute cancels.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from src.credit_bridge.api.deps import get_engine
from src.credit_bridge.credit.reconciliation import ReconciliationEngine

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/iute/{event_type}")
async def iute_webhook(
    event_type: str,
    body: dict[str, Any] = Body(...),
    engine: ReconciliationEngine = Depends(get_engine),
) -> dict[str, Any]:
    new_status = await engine.handle_iute_webhook(event_type, body)
    return {"success": True, "status": new_status}
