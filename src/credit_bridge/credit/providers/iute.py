"""Iute adapter.

Iute needs only the customer's phone: the customer completes the
application in the MyIute app, and Iute reports the outcome through
confirm/cancel webhooks as well as the status endpoint. The order
reference is chosen by us as ``CRM-{orderId}``.
"""

from __future__ import annotations

import structlog

from src.credit_bridge.core.exceptions import ValidationError
from src.credit_bridge.credit.clients.iute import IuteClient
from src.credit_bridge.credit.formatting import DEFAULT_GOODS_NAME, format_phone_international
from src.credit_bridge.credit.providers.base import ProviderAdapter, StatusTable
from src.credit_bridge.credit.schemas import (
    BankStatus,
    CrmStatus,
    LoanTerms,
    OrderData,
    OrderFile,
    ProviderId,
    SubmissionOutcome,
)

logger = structlog.get_logger(__name__)

IUTE_STATUS_TABLE = StatusTable(
    mapping={
        "CUSTOMER_NOT_EXISTS": CrmStatus.CREDIT_CHECK,
        "PENDING": CrmStatus.CREDIT_CHECK,
        "IN_PROGRESS": CrmStatus.CREDIT_CHECK,
        "PAID": CrmStatus.PAID,
        "CANCELLED": CrmStatus.CREDIT_DECLINED,
    },
    final=frozenset({"PAID", "CANCELLED"}),
    approved_like=frozenset({"PAID"}),
)

# Webhook event type -> raw Iute status it stands for
WEBHOOK_STATUSES = {
    "confirm": "PAID",
    "cancel": "CANCELLED",
}


def _order_item(item: dict) -> dict:
    offer = item.get("offer") or {}
    images = offer.get("images") or []
    return {
        "displayName": offer.get("displayName") or offer.get("name") or DEFAULT_GOODS_NAME,
        "id": str(offer.get("id") or item.get("id") or ""),
        "sku": offer.get("article"),
        "unitPrice": item.get("initialPrice"),
        "qty": item.get("quantity"),
        "itemImageUrl": images[0] if images else None,
        "itemUrl": offer.get("url"),
    }


class IuteAdapter(ProviderAdapter):
    """Iute MyIute orders. Iute reports no approved terms."""

    provider_id = ProviderId.IUTE
    requires_personal_data = False
    requires_payment = False
    attaches_documents = False

    def __init__(self, client: IuteClient, table: StatusTable = IUTE_STATUS_TABLE) -> None:
        super().__init__(table)
        self._client = client

    def conditions_changed(self, requested: LoanTerms, approved: LoanTerms | None) -> bool:
        return False

    def validate(self, order: OrderData, files: list[OrderFile]) -> None:
        if not order.phone:
            raise ValidationError("Customer phone is missing from the order")

    def application_reference(self, order: OrderData) -> str | None:
        return f"CRM-{order.order_id}"

    def order_amount(self, order: OrderData) -> float:
        return order.requested_amount or float(order.total_summ or 0)

    async def submit(self, order: OrderData, files: list[OrderFile]) -> SubmissionOutcome:
        reference = self.application_reference(order)
        payload = self._client.build_order_payload(
            reference=reference,
            phone=format_phone_international(order.phone),
            amount=self.order_amount(order),
            items=[_order_item(item) for item in order.items],
        )
        data = await self._client.create_order(payload)
        return SubmissionOutcome(
            application_id=reference,
            request_data=payload,
            initial_status=data.get("status"),
            message=data.get("message"),
            myiute_customer=data.get("myiuteCustomer"),
        )

    async def get_status(self, application_id: str) -> BankStatus | None:
        data = await self._client.get_order_status(application_id)
        if not data or not data.get("status"):
            return None
        return BankStatus(raw_status=data["status"], message=data.get("message"))

    async def refuse(self, application_id: str, reason: str | None) -> None:
        await self._client.withdraw_order(application_id)
