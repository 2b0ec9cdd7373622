"""Shared test doubles and fixtures for the credit flow.

Provides:
- InMemoryFeedRepository: FeedRepository with the same async interface, no database
- FakeCRM: CRMClient over raw Simla-shaped orders held in memory
- make_raw_order: builder for raw CRM orders
- Mocked partner clients wired into real provider adapters
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.credit_bridge.core.exceptions import CRMCommunicationError, PersistenceError
from src.credit_bridge.credit.clients.easycredit import EasyCreditClient
from src.credit_bridge.credit.clients.iute import IuteClient
from src.credit_bridge.credit.clients.microinvest import MicroinvestClient
from src.credit_bridge.credit.crm.adapter import CRMClient
from src.credit_bridge.credit.crm.simla import SimlaClient
from src.credit_bridge.credit.providers import (
    EasyCreditAdapter,
    IuteAdapter,
    MicroinvestAdapter,
    ProviderRegistry,
)
from src.credit_bridge.credit.schemas import (
    ARCHIVED_ORDER_STATUSES,
    ApplicationRequestCreate,
    ApplicationRequestRead,
    CreditPayment,
    FeedFilter,
    FeedItemData,
    OrderData,
    OrderFile,
    SentMessageCreate,
    SentMessageRead,
    StatusHistoryCreate,
    StatusHistoryRead,
)

RETAIL_PRODUCT_ID = "55cc08c9-b61b-11ef-b7b7-00155d65140c"
PASSPORT = OrderFile(name="passport.jpg", data="aGVsbG8=")


# ── Raw Order Builder ────────────────────────────────────────────────────────


def make_raw_order(
    order_id: int = 1,
    *,
    credit_company: str | None = "microinvest",
    application_id: str | None = None,
    payment_status: str | None = "not-paid",
    payment_type: str = "credit",
    amount: float | None = 5000,
    term: str | None = "6",
    name: str | None = "Ion",
    surname: str | None = "Popescu",
    idnp: str | None = "2002001234567",
    birthday: str | None = "05.03.1990",
    phone: str | None = "069123456",
    status: str = "new",
    zero_credit: bool = False,
    manager_id: int | None = 7,
) -> dict[str, Any]:
    """Raw order in the shape the Simla API returns."""
    custom_fields: dict[str, Any] = {
        "indp": idnp,
        "name": name,
        "surname": surname,
        "birthday": birthday,
        "credit_company": credit_company,
        "credit_term": term,
        "zero_credit": zero_credit,
        "loan_application_id": application_id,
    }
    payments: dict[str, Any] = {}
    if payment_status is not None:
        payments[str(order_id * 10)] = {
            "id": order_id * 10,
            "type": payment_type,
            "amount": amount,
            "status": payment_status,
        }
    return {
        "id": order_id,
        "number": f"{order_id}A",
        "site": "pandashop",
        "status": status,
        "phone": phone,
        "managerId": manager_id,
        "createdAt": "2026-01-15 10:30:00",
        "totalSumm": amount,
        "customFields": custom_fields,
        "payments": payments,
        "items": [{"offer": {"displayName": "Laptop"}, "initialPrice": amount, "quantity": 1}],
    }


# ── CRM Test Double ──────────────────────────────────────────────────────────


class FakeCRM(CRMClient):
    """In-memory CRM. Writes mutate the stored raw orders."""

    def __init__(self, orders: list[dict[str, Any]] | None = None) -> None:
        self.orders: dict[int, dict[str, Any]] = {o["id"]: o for o in orders or []}
        self.files: dict[int, list[OrderFile]] = {}
        self.attached: list[tuple[int, str]] = []
        self.payment_updates: list[tuple[int, str, str]] = []
        self.order_status_updates: list[tuple[int, str]] = []
        self.linked: list[tuple[int, str, str | None]] = []
        self.history: list[dict[str, Any]] = []
        self.managers: dict[int, str] = {7: "Ana Rusu"}
        self.fail_linkage = False
        self.order_reads = 0
        self._parser = SimlaClient("http://crm.test/api/v5", "test-key")

    def add(self, order: dict[str, Any]) -> None:
        self.orders[order["id"]] = order

    async def get_order(self, order_id: int) -> dict[str, Any] | None:
        self.order_reads += 1
        return self.orders.get(order_id)

    def extract_order_data(self, order: dict[str, Any]) -> OrderData:
        return self._parser.extract_order_data(order)

    def find_credit_payment(self, order: dict[str, Any]) -> CreditPayment | None:
        return self._parser.find_credit_payment(order)

    async def get_orders_with_active_applications(self) -> list[dict[str, Any]]:
        return [
            o for o in self.orders.values()
            if o["customFields"].get("loan_application_id")
        ]

    async def get_order_files_as_base64(self, order_id: int, site: str | None) -> list[OrderFile]:
        return list(self.files.get(order_id, []))

    async def upload_file_to_order(self, order_id: int, file: OrderFile, site: str | None) -> None:
        self.attached.append((order_id, file.name))

    async def update_order_with_application_id(
        self,
        order_id: int,
        application_id: str,
        site: str | None,
        credit_company: str | None = None,
    ) -> None:
        if self.fail_linkage:
            raise CRMCommunicationError("CRM unavailable", status_code=503)
        fields = self.orders[order_id]["customFields"]
        fields["loan_application_id"] = application_id
        if credit_company:
            fields["credit_company"] = credit_company
        self.linked.append((order_id, application_id, credit_company))

    async def update_order_custom_fields(
        self, order_id: int, fields: dict[str, Any], site: str | None
    ) -> None:
        self.orders[order_id]["customFields"].update(fields)

    async def update_payment_status(
        self, order_id: int, payment_id: str, status: str, site: str | None
    ) -> None:
        for payment in self.orders[order_id]["payments"].values():
            if str(payment["id"]) == str(payment_id):
                payment["status"] = status
        self.payment_updates.append((order_id, payment_id, status))

    async def update_order_status(self, order_id: int, status: str, site: str | None) -> None:
        self.orders[order_id]["status"] = status
        self.order_status_updates.append((order_id, status))

    async def check_order_has_contract_files(self, order_id: int, site: str | None) -> bool:
        return any(oid == order_id for oid, _ in self.attached)

    async def get_manager_name(self, manager_id: int | None) -> str | None:
        return self.managers.get(manager_id) if manager_id else None

    async def get_user_name(self, user_id: int) -> str | None:
        return self.managers.get(user_id, f"User #{user_id}")

    async def get_orders_history(
        self, since_id: int | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        return [h for h in self.history if h["id"] > (since_id or 0)][:limit]


# ── Repository Test Double ───────────────────────────────────────────────────


class InMemoryFeedRepository:
    """In-memory FeedRepository for testing without database."""

    def __init__(self) -> None:
        self.items: dict[int, FeedItemData] = {}
        self.history: list[StatusHistoryRead] = []
        self.metadata: dict[str, str] = {}
        self.requests: dict[str, ApplicationRequestRead] = {}
        self.sent: list[SentMessageRead] = []
        self.fail_upserts_for: set[int] = set()
        self._ids = itertools.count(1)

    async def upsert_feed_item(self, item: FeedItemData) -> FeedItemData:
        if item.order_id in self.fail_upserts_for:
            raise PersistenceError("write failed", application_id=item.application_id)
        stored = item.model_copy(update={"last_updated": datetime.now(timezone.utc)})
        self.items[item.order_id] = stored
        return stored

    async def upsert_many(self, items: list[FeedItemData]) -> list[FeedItemData]:
        written = []
        for item in items:
            try:
                written.append(await self.upsert_feed_item(item))
            except PersistenceError:
                continue
        return written

    async def get_all_feed_items(self, filters: FeedFilter | None = None) -> list[FeedItemData]:
        items = list(self.items.values())
        if filters is not None:
            if filters.bank_status is not None:
                items = [i for i in items if i.bank_status == filters.bank_status]
            if filters.credit_company is not None:
                items = [i for i in items if i.credit_company == filters.credit_company]
            if filters.conditions_changed is not None:
                items = [i for i in items if i.conditions_changed == filters.conditions_changed]
            if filters.archive is True:
                items = [i for i in items if i.order_status in ARCHIVED_ORDER_STATUSES]
            elif filters.archive is False:
                items = [i for i in items if i.order_status not in ARCHIVED_ORDER_STATUSES]
        return items

    async def get_feed_item(self, order_id: int) -> FeedItemData | None:
        return self.items.get(order_id)

    async def get_feed_item_by_application_id(self, application_id: str) -> FeedItemData | None:
        for item in self.items.values():
            if item.application_id == application_id:
                return item
        return None

    async def update_application_status(
        self, application_id: str, bank_status: str, crm_status: str | None = None
    ) -> int:
        count = 0
        for order_id, item in list(self.items.items()):
            if item.application_id != application_id:
                continue
            update: dict[str, Any] = {"bank_status": bank_status}
            if crm_status is not None:
                update["crm_status"] = crm_status
            self.items[order_id] = item.model_copy(update=update)
            count += 1
        return count

    async def delete_feed_item(self, order_id: int) -> bool:
        return self.items.pop(order_id, None) is not None

    async def count_feed_items(self) -> int:
        return len(self.items)

    async def get_sync_metadata(self, key: str) -> str | None:
        return self.metadata.get(key)

    async def save_sync_metadata(self, key: str, value: str) -> None:
        self.metadata[key] = value

    async def get_last_sync_time(self) -> datetime | None:
        value = self.metadata.get("feed_last_sync")
        return datetime.fromisoformat(value) if value else None

    async def update_last_sync_time(self) -> datetime:
        now = datetime.now(timezone.utc)
        self.metadata["feed_last_sync"] = now.isoformat()
        return now

    async def save_status_history(self, data: StatusHistoryCreate) -> StatusHistoryRead | None:
        row = StatusHistoryRead(
            id=next(self._ids), created_at=datetime.now(timezone.utc), **data.model_dump()
        )
        self.history.append(row)
        return row

    async def get_status_history(self, application_id: str) -> list[StatusHistoryRead]:
        return [h for h in self.history if h.application_id == application_id]

    async def save_application_request(
        self, data: ApplicationRequestCreate
    ) -> ApplicationRequestRead:
        record = ApplicationRequestRead(
            id=next(self._ids), created_at=datetime.now(timezone.utc), **data.model_dump()
        )
        self.requests[data.application_id] = record
        return record

    async def get_application_request(self, application_id: str) -> ApplicationRequestRead | None:
        return self.requests.get(application_id)

    async def get_application_request_by_order_id(
        self, order_id: int
    ) -> ApplicationRequestRead | None:
        matches = [r for r in self.requests.values() if r.order_id == order_id]
        return matches[-1] if matches else None

    async def save_sent_message(self, data: SentMessageCreate) -> SentMessageRead:
        record = SentMessageRead(
            id=next(self._ids), sent_at=datetime.now(timezone.utc), **data.model_dump()
        )
        self.sent.append(record)
        return record

    async def get_sent_messages(self, application_id: str) -> list[SentMessageRead]:
        return [m for m in self.sent if m.application_id == application_id]


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def crm() -> FakeCRM:
    return FakeCRM()


@pytest.fixture
def repository() -> InMemoryFeedRepository:
    return InMemoryFeedRepository()


@pytest.fixture
def microinvest_client() -> AsyncMock:
    client = AsyncMock(spec=MicroinvestClient)
    client.import_loan_application.return_value = {"applicationID": "MI-100"}
    client.check_application_status.return_value = None
    client.get_contracts.return_value = []
    client.get_messages.return_value = []
    return client


@pytest.fixture
def easycredit_client() -> AsyncMock:
    client = AsyncMock(spec=EasyCreditClient)
    client.create_request.return_value = {"Status": "OK", "URN": "URN-200"}
    client.check_status.return_value = None
    client.get_contract.return_value = {}
    return client


@pytest.fixture
def iute_client() -> AsyncMock:
    client = AsyncMock(spec=IuteClient)
    client.build_order_payload.side_effect = lambda **kw: {
        "orderId": kw["reference"],
        "myiutePhone": kw["phone"],
        "totalAmount": kw["amount"],
    }
    client.create_order.return_value = {"status": "PENDING", "myiuteCustomer": True}
    client.get_order_status.return_value = None
    return client


@pytest.fixture
def providers(microinvest_client, easycredit_client, iute_client) -> ProviderRegistry:
    return ProviderRegistry([
        MicroinvestAdapter(microinvest_client),
        EasyCreditAdapter(easycredit_client),
        IuteAdapter(iute_client),
    ])
