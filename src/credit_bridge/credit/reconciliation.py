"""Status reconciliation between providers and the CRM.

Periodically (and on demand) fetches each linked application's bank
status, maps it through the provider's StatusTable, detects changed
loan conditions on approval, and writes the canonical status back to
the CRM payment together with an audit trail in the status history.

Reconciliation is idempotent: a pass over unchanged bank statuses makes
no CRM writes and appends no history rows. Batch passes isolate failures
per order so one bad order never aborts the rest.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.credit_bridge.core.exceptions import CreditBridgeError, ValidationError
from src.credit_bridge.credit.crm.adapter import CRMClient
from src.credit_bridge.credit.providers import ProviderRegistry
from src.credit_bridge.credit.providers.base import UNMAPPED, ProviderAdapter
from src.credit_bridge.credit.providers.iute import WEBHOOK_STATUSES
from src.credit_bridge.credit.repository import FeedRepository
from src.credit_bridge.credit.schemas import (
    ARCHIVED_ORDER_STATUSES,
    BankStatus,
    BatchError,
    BatchResult,
    Comparison,
    ComparisonResult,
    CrmStatus,
    FeedItemData,
    HistorySource,
    OrderData,
    StatusCheckResult,
    StatusHistoryCreate,
    StatusHistoryRead,
    StatusType,
)

logger = structlog.get_logger(__name__)

UNKNOWN_BANK_STATUS = "Unknown"
CREDIT_PAYMENT_TYPE = "credit"
CONDITIONS_CHANGED_DETAILS = "Bank changed conditions"


class ReconciliationEngine:
    """Brings CRM payment statuses in line with provider statuses.

    Args:
        crm: CRM client.
        providers: Adapter registry.
        repository: Feed store, used for the status history and webhooks.
        delay: Seconds to pause between orders in a batch pass.
    """

    def __init__(
        self,
        crm: CRMClient,
        providers: ProviderRegistry,
        repository: FeedRepository,
        delay: float = 0.5,
    ) -> None:
        self._crm = crm
        self._providers = providers
        self._repository = repository
        self._delay = delay

    # ── Single Order ────────────────────────────────────────────────────────

    async def check_and_update_status(self, order_id: int) -> StatusCheckResult | None:
        """Reconcile one order by id.

        Returns:
            StatusCheckResult, or None when the order is missing, has no
            application, the bank status is not available yet, or the
            status is unmapped.
        """
        raw = await self._crm.get_order(order_id)
        if raw is None:
            logger.warning("reconcile.order_not_found", order_id=order_id)
            return None
        result, _ = await self._reconcile(raw)
        return result

    async def reconcile_one(self, raw_order: dict[str, Any]) -> StatusCheckResult | None:
        result, _ = await self._reconcile(raw_order)
        return result

    async def _reconcile(
        self, raw_order: dict[str, Any]
    ) -> tuple[StatusCheckResult | None, FeedItemData | None]:
        """Reconcile a raw CRM order and build its feed snapshot.

        The snapshot is produced whenever the order carries an application,
        including when the bank status is not ready or not mapped.
        """
        order = self._crm.extract_order_data(raw_order)
        if not order.loan_application_id:
            logger.debug("reconcile.no_application", order_id=order.order_id)
            return None, None

        adapter = self._providers.for_company(order.credit_company)
        application_id = order.loan_application_id
        status = await adapter.get_status(application_id)

        if status is None:
            logger.debug(
                "reconcile.status_not_ready",
                order_id=order.order_id,
                application_id=application_id,
                provider=adapter.provider_id.value,
            )
            snapshot = await self._snapshot(order, adapter, None, False)
            return None, snapshot

        canonical = adapter.map_status(status.raw_status)
        conditions_changed = False
        if adapter.is_approval(status.raw_status):
            conditions_changed = adapter.conditions_changed(
                adapter.requested_terms(order), status.approved
            )

        if canonical is UNMAPPED:
            logger.warning(
                "reconcile.unknown_bank_status",
                order_id=order.order_id,
                application_id=application_id,
                provider=adapter.provider_id.value,
                bank_status=status.raw_status,
            )
            snapshot = await self._snapshot(order, adapter, status, conditions_changed)
            return None, snapshot

        if canonical == CrmStatus.CREDIT_APPROVED and conditions_changed:
            canonical = CrmStatus.CONDITIONS_CHANGED
            logger.info(
                "reconcile.conditions_changed",
                order_id=order.order_id,
                application_id=application_id,
                provider=adapter.provider_id.value,
            )

        updated = False
        if order.payment is not None and order.payment.status != canonical.value:
            await self._write_transition(order, status, canonical)
            updated = True

        if adapter.is_approval(status.raw_status) and order.payment is not None:
            if order.payment.type == CREDIT_PAYMENT_TYPE:
                await self._auto_attach_contracts(order, adapter)

        result = StatusCheckResult(
            order_id=order.order_id,
            application_id=application_id,
            credit_company=adapter.provider_id,
            bank_status=status.raw_status,
            document_status=status.document_status,
            crm_status=canonical,
            is_final=adapter.is_final(status.raw_status),
            conditions_changed=conditions_changed,
            updated=updated,
        )
        crm_status = canonical.value if updated else None
        snapshot = await self._snapshot(order, adapter, status, conditions_changed, crm_status)
        return result, snapshot

    async def _write_transition(
        self, order: OrderData, status: BankStatus, canonical: CrmStatus
    ) -> None:
        application_id = order.loan_application_id
        await self._crm.update_payment_status(
            order.order_id, order.payment.id, canonical.value, order.site
        )
        await self._repository.save_status_history(
            StatusHistoryCreate(
                application_id=application_id,
                status_type=StatusType.BANK,
                new_status=status.raw_status,
                source=HistorySource.CRON,
            )
        )
        await self._repository.save_status_history(
            StatusHistoryCreate(
                application_id=application_id,
                status_type=StatusType.CRM,
                old_status=order.payment.status,
                new_status=canonical.value,
                source=HistorySource.CRON,
                details=(
                    CONDITIONS_CHANGED_DETAILS
                    if canonical == CrmStatus.CONDITIONS_CHANGED
                    else None
                ),
            )
        )
        logger.info(
            "reconcile.status_updated",
            order_id=order.order_id,
            application_id=application_id,
            bank_status=status.raw_status,
            document_status=status.document_status,
            crm_status=canonical.value,
        )

    async def _auto_attach_contracts(self, order: OrderData, adapter: ProviderAdapter) -> None:
        """Attach the bank's contract to the order once, best-effort."""
        application_id = order.loan_application_id
        try:
            if await self._crm.check_order_has_contract_files(order.order_id, order.site):
                logger.debug(
                    "reconcile.contracts_already_attached",
                    order_id=order.order_id,
                    application_id=application_id,
                )
                return
            files = await adapter.get_contracts(application_id)
            if not files:
                logger.debug(
                    "reconcile.contracts_not_ready",
                    order_id=order.order_id,
                    application_id=application_id,
                )
                return
            for file in files:
                await self._crm.upload_file_to_order(order.order_id, file, order.site)
                logger.info(
                    "reconcile.contract_attached",
                    order_id=order.order_id,
                    application_id=application_id,
                    file_name=file.name,
                )
        except Exception as exc:
            logger.error(
                "reconcile.contract_attach_failed",
                order_id=order.order_id,
                application_id=application_id,
                error=str(exc),
            )

    async def snapshot_order(self, raw_order: dict[str, Any]) -> FeedItemData | None:
        """Observe an order's bank status without writing anything back.

        Returns:
            Feed snapshot, or None when the order has no application.
        """
        order = self._crm.extract_order_data(raw_order)
        if not order.loan_application_id:
            return None
        adapter = self._providers.for_company(order.credit_company)
        status = await adapter.get_status(order.loan_application_id)
        conditions_changed = False
        if status is not None and adapter.is_approval(status.raw_status):
            conditions_changed = adapter.conditions_changed(
                adapter.requested_terms(order), status.approved
            )
        return await self._snapshot(order, adapter, status, conditions_changed)

    async def _snapshot(
        self,
        order: OrderData,
        adapter: ProviderAdapter,
        status: BankStatus | None,
        conditions_changed: bool,
        crm_status: str | None = None,
    ) -> FeedItemData:
        comparison = Comparison(requested=adapter.requested_terms(order))
        if status is not None and adapter.is_approval(status.raw_status):
            comparison.approved = status.approved

        try:
            manager_name = await self._crm.get_manager_name(order.manager_id)
        except CreditBridgeError:
            manager_name = None

        return FeedItemData(
            order_id=order.order_id,
            order_number=order.order_number,
            application_id=order.loan_application_id,
            credit_company=adapter.provider_id.value,
            customer_name=order.customer_name,
            bank_status=status.raw_status if status else UNKNOWN_BANK_STATUS,
            document_status=status.document_status if status else None,
            crm_status=crm_status or (order.payment.status if order.payment else None),
            payment_type=order.payment.type if order.payment else None,
            order_status=order.order_status,
            manager_id=order.manager_id,
            manager_name=manager_name,
            conditions_changed=conditions_changed,
            comparison=comparison,
            order_created_at=order.created_at,
        )

    # ── Batch ───────────────────────────────────────────────────────────────

    async def reconcile_all(self) -> BatchResult:
        """Reconcile every order with a linked application.

        Orders in an archived lifecycle status are skipped. Per-order
        failures are collected into the result instead of propagating.
        """
        orders = await self._crm.get_orders_with_active_applications()
        logger.info("reconcile.batch_started", total=len(orders))

        batch = BatchResult(total=len(orders))
        for raw in orders:
            order_id = raw.get("id")
            if raw.get("status") in ARCHIVED_ORDER_STATUSES:
                logger.debug(
                    "reconcile.skipped_archived", order_id=order_id, status=raw.get("status")
                )
                continue
            try:
                result, snapshot = await self._reconcile(raw)
            except Exception as exc:
                logger.error("reconcile.order_failed", order_id=order_id, error=str(exc))
                batch.errors.append(BatchError(order_id=order_id, error=str(exc)))
                continue

            if snapshot is not None:
                batch.snapshots.append(snapshot)
                batch.active_order_ids.append(snapshot.order_id)
            if result is not None:
                batch.results.append(result)
                if result.updated:
                    batch.updated += 1
                if result.is_final:
                    batch.final += 1
            await asyncio.sleep(self._delay)

        logger.info(
            "reconcile.batch_completed",
            total=batch.total,
            updated=batch.updated,
            final=batch.final,
            errors=len(batch.errors),
        )
        return batch

    # ── Read-only Views ─────────────────────────────────────────────────────

    async def get_comparison_data(self, order_id: int) -> ComparisonResult:
        """Live requested-vs-approved comparison for one order.

        Raises:
            ValidationError: If the order does not exist.
        """
        raw = await self._crm.get_order(order_id)
        if raw is None:
            raise ValidationError(f"Order {order_id} not found")

        order = self._crm.extract_order_data(raw)
        adapter = self._providers.for_company(order.credit_company)
        if not order.loan_application_id:
            return ComparisonResult(
                order_id=order_id,
                has_application=False,
                credit_company=adapter.provider_id,
            )

        requested = adapter.requested_terms(order)
        result = ComparisonResult(
            order_id=order_id,
            has_application=True,
            credit_company=adapter.provider_id,
            application_id=order.loan_application_id,
            crm_status=order.payment.status if order.payment else None,
            requested=requested,
        )

        status = await adapter.get_status(order.loan_application_id)
        if status is None:
            return result

        result.bank_status = status.raw_status
        result.document_status = status.document_status
        result.customer_name = status.customer_name
        if adapter.is_approved_like(status.raw_status) and status.approved is not None:
            approved = status.approved
            result.approved = approved
            result.amount_match = adapter.amount_matches(requested.amount, approved.amount)
            result.term_match = adapter.term_matches(requested.term, approved.term)
            result.product_match = adapter.product_matches(
                requested.product_type, approved.product_type
            )
            result.has_changes = adapter.conditions_changed(requested, approved)
        return result

    async def get_status_history(self, application_id: str) -> list[StatusHistoryRead]:
        return await self._repository.get_status_history(application_id)

    # ── Webhooks ────────────────────────────────────────────────────────────

    async def handle_iute_webhook(self, event_type: str, body: dict[str, Any]) -> str:
        """Apply an Iute confirm/cancel notification.

        Args:
            event_type: "confirm" or "cancel".
            body: Webhook payload; orderId is our application reference.

        Returns:
            The raw Iute status the event stands for.

        Raises:
            ValidationError: Unknown event type or unknown application.
        """
        new_status = WEBHOOK_STATUSES.get(event_type)
        if new_status is None:
            raise ValidationError(f"Unknown webhook type: {event_type}")

        application_id = body.get("orderId")
        logger.info(
            "webhook.iute_received",
            event_type=event_type,
            application_id=application_id,
            total_amount=body.get("totalAmount"),
        )
        item = await self._repository.get_feed_item_by_application_id(application_id or "")
        if item is None:
            logger.warning("webhook.application_not_found", application_id=application_id)
            raise ValidationError(f"Application not found: {application_id}")

        old_status = item.bank_status
        if old_status == new_status:
            logger.info(
                "webhook.iute_duplicate",
                application_id=application_id,
                order_id=item.order_id,
                status=new_status,
            )
            return new_status

        adapter = self._providers.for_company(item.credit_company)
        canonical = adapter.map_status(new_status)

        await self._repository.update_application_status(
            application_id, new_status, canonical.value if canonical else None
        )

        if canonical is not UNMAPPED:
            raw = await self._crm.get_order(item.order_id)
            order = self._crm.extract_order_data(raw) if raw else None
            if order is not None and order.payment is not None:
                await self._crm.update_payment_status(
                    order.order_id, order.payment.id, canonical.value, order.site
                )

        default_details = "Credit issued" if event_type == "confirm" else "Application cancelled"
        await self._repository.save_status_history(
            StatusHistoryCreate(
                application_id=application_id,
                status_type=StatusType.BANK,
                old_status=old_status,
                new_status=new_status,
                source=HistorySource.WEBHOOK,
                details=body.get("description") or default_details,
            )
        )
        logger.info(
            "webhook.iute_processed",
            application_id=application_id,
            order_id=item.order_id,
            old_status=old_status,
            new_status=new_status,
        )
        return new_status
