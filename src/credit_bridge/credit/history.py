"""CRM change-history sync.

Reads the CRM order change log since the stored cursor and records
manager-made edits to credit-relevant fields as crm status history rows,
so the application timeline shows who changed what in the CRM.
"""

from __future__ import annotations

import structlog

from src.credit_bridge.credit.crm.adapter import CRMClient
from src.credit_bridge.credit.repository import FeedRepository
from src.credit_bridge.credit.schemas import (
    HistorySource,
    HistorySyncResult,
    StatusHistoryCreate,
    StatusType,
)

logger = structlog.get_logger(__name__)

HISTORY_CURSOR_KEY = "lastHistoryId"
HISTORY_PAGE_SIZE = 100

# Field path prefix in the CRM change log -> label shown in the timeline
TRACKED_FIELDS: dict[str, str] = {
    "payments.status": "Payment status",
    "customFields.credit_sum": "Credit amount",
    "customFields.credit_term": "Credit term",
    "customFields.credit_company": "Credit company",
}


def _tracked_label(field: str | None) -> str | None:
    if not field:
        return None
    for prefix, label in TRACKED_FIELDS.items():
        if field.startswith(prefix):
            return label
    return None


def _change_value(value) -> str:
    if isinstance(value, dict):
        value = value.get("code") or value.get("name") or value.get("id")
    return "" if value is None else str(value)


async def sync_crm_history(crm: CRMClient, repository: FeedRepository) -> HistorySyncResult:
    """Import user-made CRM changes on linked orders into the status history.

    Only changes with source "user" to a tracked field on an order that
    carries an application are recorded. The cursor advances past every
    change read, recorded or not.

    Returns:
        HistorySyncResult; on failure its error field is set instead of
        raising.
    """
    try:
        cursor = await repository.get_sync_metadata(HISTORY_CURSOR_KEY)
        since_id = int(cursor) if cursor else None
        changes = await crm.get_orders_history(since_id, HISTORY_PAGE_SIZE)
        if not changes:
            return HistorySyncResult()

        processed = 0
        saved = 0
        max_id = since_id or 0
        for change in changes:
            change_id = int(change.get("id") or 0)
            max_id = max(max_id, change_id)

            if change.get("source") != HistorySource.USER.value:
                continue
            label = _tracked_label(change.get("field"))
            if label is None:
                continue
            order_id = (change.get("order") or {}).get("id")
            if not order_id:
                continue

            try:
                raw = await crm.get_order(order_id)
                if raw is None:
                    continue
                application_id = crm.extract_order_data(raw).loan_application_id
                if not application_id:
                    continue

                user_id = (change.get("user") or {}).get("id")
                manager_name = await crm.get_user_name(user_id) if user_id else None
                old_value = _change_value(change.get("oldValue"))
                new_value = _change_value(change.get("newValue"))

                await repository.save_status_history(
                    StatusHistoryCreate(
                        application_id=application_id,
                        status_type=StatusType.CRM,
                        old_status=old_value,
                        new_status=new_value,
                        source=HistorySource.USER,
                        details=f"{label}: {old_value or '-'} -> {new_value or '-'}",
                        manager_id=user_id,
                        manager_name=manager_name,
                    )
                )
                saved += 1
                logger.debug(
                    "history.change_saved",
                    order_id=order_id,
                    application_id=application_id,
                    field=change.get("field"),
                )
            except Exception as exc:
                logger.error("history.change_failed", change_id=change_id, error=str(exc))
            processed += 1

        if max_id > (since_id or 0):
            await repository.save_sync_metadata(HISTORY_CURSOR_KEY, str(max_id))

        if saved:
            logger.info("history.sync_completed", processed=processed, saved=saved)
        return HistorySyncResult(processed=processed, saved=saved)
    except Exception as exc:
        logger.error("history.sync_failed", error=str(exc))
        return HistorySyncResult(error=str(exc))
