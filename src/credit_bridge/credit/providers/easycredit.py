"""Easy Credit adapter.

Requests are identified by the URN Easy Credit returns on creation.
Documents cannot travel with the request; they are uploaded to a
separate files host once the request exists.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import structlog

from src.credit_bridge.core.exceptions import ProviderCommunicationError
from src.credit_bridge.credit.clients.easycredit import EasyCreditClient
from src.credit_bridge.credit.formatting import (
    format_birthday,
    format_phone_national,
    goods_name_from_items,
)
from src.credit_bridge.credit.providers.base import ProviderAdapter, StatusTable
from src.credit_bridge.credit.schemas import (
    BankStatus,
    CrmStatus,
    LoanTerms,
    OrderData,
    OrderFile,
    PartnerMessage,
    ProviderId,
    SubmissionOutcome,
)

logger = structlog.get_logger(__name__)

EASYCREDIT_STATUS_TABLE = StatusTable(
    mapping={
        "New": CrmStatus.CREDIT_CHECK,
        "More Data": CrmStatus.CREDIT_CHECK,
        "Approved": CrmStatus.CREDIT_APPROVED,
        "Refused": CrmStatus.CREDIT_DECLINED,
        "Rejected": CrmStatus.CREDIT_DECLINED,
        "Canceled": CrmStatus.CREDIT_DECLINED,
        "Disbursed": CrmStatus.PAID,
        "Settled": CrmStatus.PAID,
    },
    final=frozenset({"Refused", "Rejected", "Canceled", "Disbursed", "Settled"}),
    approved_like=frozenset({"Approved", "Disbursed", "Settled"}),
    approval_status="Approved",
)

DEFAULT_TERM = 6
FIRST_INSTALLMENT_OFFSET_DAYS = 20
AMOUNT_TOLERANCE = 1.0

# Status messages Easy Credit sends when there is nothing to say
_EMPTY_MESSAGES = {"", "#"}


def product_id_for_term(term: int) -> int:
    """Easy Credit product for an instalment count."""
    if 6 <= term <= 11:
        return 54
    if term == 12:
        return 55
    if 13 <= term <= 18:
        return 56
    if 19 <= term <= 24:
        return 57
    if 25 <= term <= 36:
        return 58
    return 54


def first_installment_date(
    days_from_now: int = FIRST_INSTALLMENT_OFFSET_DAYS, today: date | None = None
) -> str:
    start = today or datetime.now(timezone.utc).date()
    return (start + timedelta(days=days_from_now)).isoformat()


class EasyCreditAdapter(ProviderAdapter):
    """Easy Credit instalment requests.

    Approved amounts are compared with a tolerance of 1 (currency unit);
    the product is never compared.
    """

    provider_id = ProviderId.EASYCREDIT
    uploads_after_submit = True

    def __init__(
        self,
        client: EasyCreditClient,
        table: StatusTable = EASYCREDIT_STATUS_TABLE,
    ) -> None:
        super().__init__(table)
        self._client = client

    def amount_matches(self, requested: float, approved: float) -> bool:
        return abs(requested - approved) <= AMOUNT_TOLERANCE

    def product_matches(self, requested: str, approved: str) -> bool:
        return True

    def application_reference(self, order: OrderData) -> str | None:
        return None

    def build_payload(self, order: OrderData, today: date | None = None) -> dict:
        term = order.credit_term_months or DEFAULT_TERM
        return {
            "Product": product_id_for_term(term),
            "UIN": order.idnp,
            "ApDateOfBirth": format_birthday(order.birthday),
            "ApFirstName": order.name or "",
            "ApLastName": order.surname or "",
            "CaMobile": format_phone_national(order.phone),
            "GoodsName": goods_name_from_items(order.items),
            "CreditAmount": order.requested_amount,
            "NumberOfInstallments": term,
            "FirstInstallmentDate": first_installment_date(today=today),
        }

    async def submit(self, order: OrderData, files: list[OrderFile]) -> SubmissionOutcome:
        payload = self.build_payload(order)
        response = await self._client.create_request(payload)
        if response.get("Status") != "OK" or not response.get("URN"):
            message = response.get("Message") or response.get("Status") or "No URN in response"
            raise ProviderCommunicationError(
                "Easy Credit did not create the request",
                provider=self.provider_id.value,
                provider_message=str(message),
            )
        return SubmissionOutcome(
            application_id=str(response["URN"]),
            request_data=payload,
        )

    async def upload_documents(self, application_id: str, files: list[OrderFile]) -> None:
        await self._client.upload_files(application_id, [f.model_dump() for f in files])

    async def get_status(self, application_id: str) -> BankStatus | None:
        response = await self._client.check_status(application_id)
        if not response or response.get("Status") != "OK":
            return None
        raw_status = response.get("RequestStatus")
        if not raw_status:
            return None
        return BankStatus(
            raw_status=raw_status,
            approved=LoanTerms(
                amount=float(response.get("LoanAmount") or 0),
                term=int(response.get("Installments") or 0),
                product_type="retail",
            ),
            document_status=response.get("DocumentStatus"),
            message=response.get("Message"),
        )

    async def get_contracts(self, application_id: str) -> list[OrderFile]:
        response = await self._client.get_contract(application_id, "RO")
        contract = response.get("DocTypeA")
        if not contract:
            return []
        return [OrderFile(name=f"contract_{application_id}.pdf", data=contract)]

    async def refuse(self, application_id: str, reason: str | None) -> None:
        await self._client.cancel_request(application_id)

    async def get_messages(self, application_id: str, new_only: bool = True) -> list[PartnerMessage]:
        """Easy Credit only comments through the status message, one way."""
        status = await self.get_status(application_id)
        text = (status.message or "").strip() if status else ""
        if text in _EMPTY_MESSAGES:
            return []
        return [
            PartnerMessage(
                date=datetime.now(timezone.utc).isoformat(),
                sender_name="Easy Credit",
                sender_id="easycredit",
                text=text,
            )
        ]
