"""Microinvest adapter.

Microinvest prices zero-interest instalments as separate loan products
per term, so the requested product is derived from the order's
zero-credit flag and term, and a conditions change includes the bank
switching between a 0% product and the retail product.
"""

from __future__ import annotations

from collections.abc import Mapping

import structlog

from src.credit_bridge.core.exceptions import ProviderCommunicationError, ValidationError
from src.credit_bridge.credit.clients.microinvest import MicroinvestClient
from src.credit_bridge.credit.formatting import format_birthday, format_phone_international
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

MICROINVEST_STATUS_TABLE = StatusTable(
    mapping={
        "Placed": CrmStatus.CREDIT_CHECK,
        "Processing": CrmStatus.CREDIT_CHECK,
        "Approved": CrmStatus.CREDIT_APPROVED,
        "PendingIssue": CrmStatus.CREDIT_APPROVED,
        "Refused": CrmStatus.CREDIT_DECLINED,
        "IssueRejected": CrmStatus.CREDIT_DECLINED,
        "SignedOnline": CrmStatus.SIGNED_ONLINE,
        "SignedPhysically": CrmStatus.SIGNED_ONLINE,
        "Issued": CrmStatus.PAID,
    },
    final=frozenset({"Refused", "Issued", "IssueRejected"}),
    approved_like=frozenset(
        {"Approved", "SignedOnline", "SignedPhysically", "Issued", "PendingIssue"}
    ),
    approval_status="Approved",
)

# Product name -> Microinvest loanProductID
DEFAULT_LOAN_PRODUCTS: Mapping[str, str] = {
    "0%_2": "6eddefc9-fbf9-11ee-b780-00155d65140c",
    "0%_3": "52d986f7-0171-11ef-b782-00155d65140c",
    "0%_4": "6eddefdd-fbf9-11ee-b780-00155d65140c",
    "0%_6": "74ff15ad-fbf9-11ee-b780-00155d65140c",
    "retail": "55cc08c9-b61b-11ef-b7b7-00155d65140c",
}

RETAIL_PRODUCT = "retail"
ZERO_INTEREST_PREFIX = "0%"


def _format_amount(amount: float) -> str:
    return str(int(amount)) if float(amount).is_integer() else str(amount)


class MicroinvestAdapter(ProviderAdapter):
    """Microinvest loan applications.

    Requires at least one attached file (passport photo); files travel
    inside the application payload.
    """

    provider_id = ProviderId.MICROINVEST
    supports_messages = True

    def __init__(
        self,
        client: MicroinvestClient,
        table: StatusTable = MICROINVEST_STATUS_TABLE,
        loan_products: Mapping[str, str] = DEFAULT_LOAN_PRODUCTS,
    ) -> None:
        super().__init__(table)
        self._client = client
        self._products = dict(loan_products)
        self._product_names = {pid: name for name, pid in self._products.items()}

    # ── Products ────────────────────────────────────────────────────────────

    def loan_product_id(self, zero_credit: bool, credit_term: str | int | None) -> str:
        """Zero-interest product for the term when flagged, else retail."""
        if zero_credit:
            key = f"{ZERO_INTEREST_PREFIX}_{credit_term}"
            if key in self._products:
                return self._products[key]
        return self._products[RETAIL_PRODUCT]

    def product_name(self, product_id: str | None) -> str:
        return self._product_names.get(product_id or "", "unknown")

    def product_type(self, product_id: str | None) -> str:
        name = self.product_name(product_id)
        return ZERO_INTEREST_PREFIX if name.startswith(ZERO_INTEREST_PREFIX) else RETAIL_PRODUCT

    def requested_terms(self, order: OrderData) -> LoanTerms:
        product_id = self.loan_product_id(order.zero_credit, order.credit_term)
        return LoanTerms(
            amount=order.requested_amount,
            term=order.credit_term_months,
            product_type=self.product_type(product_id),
        )

    # ── Submission ──────────────────────────────────────────────────────────

    def validate(self, order: OrderData, files: list[OrderFile]) -> None:
        if not files:
            raise ValidationError("Attach a photo of the customer's passport to the order")

    def application_reference(self, order: OrderData) -> str | None:
        return None

    def build_payload(self, order: OrderData) -> dict:
        """Application payload without file bodies."""
        return {
            "idnp": order.idnp,
            "name": order.name or "",
            "surname": order.surname or "",
            "birthDate": format_birthday(order.birthday),
            "phoneCell": format_phone_international(order.phone),
            "agreementLoanHistoryPD": True,
            "marketingAgreement": True,
            "loanProductID": self.loan_product_id(order.zero_credit, order.credit_term),
            "loanTerm": str(order.credit_term),
            "amount": _format_amount(order.requested_amount),
            "comment": f"Nr. comenzii: {order.order_number}",
        }

    async def submit(self, order: OrderData, files: list[OrderFile]) -> SubmissionOutcome:
        payload = self.build_payload(order)
        attachments = [f.model_dump() for f in files]
        data = await self._client.import_loan_application(
            {**payload, "fileAttachmentSet": attachments}
        )
        application_id = (data or {}).get("applicationID")
        if not application_id:
            raise ProviderCommunicationError(
                "Microinvest response has no applicationID",
                provider=self.provider_id.value,
            )
        return SubmissionOutcome(
            application_id=str(application_id),
            request_data=payload,
        )

    async def upload_documents(self, application_id: str, files: list[OrderFile]) -> None:
        await self._client.send_contracts(application_id, [f.model_dump() for f in files])

    # ── Status & Follow-up ──────────────────────────────────────────────────

    async def get_status(self, application_id: str) -> BankStatus | None:
        data = await self._client.check_application_status(application_id)
        if not data or not data.get("status"):
            return None
        customer_name = f"{data.get('name') or ''} {data.get('surname') or ''}".strip()
        return BankStatus(
            raw_status=data["status"],
            approved=LoanTerms(
                amount=float(data.get("amount") or 0),
                term=int(data.get("loanTerm") or 0),
                product_type=self.product_type(data.get("loanProductID")),
            ),
            customer_name=customer_name or None,
        )

    async def get_contracts(self, application_id: str) -> list[OrderFile]:
        files = await self._client.get_contracts(application_id)
        return [
            OrderFile(
                name=f.get("name") or f"contract_{application_id}.pdf",
                data=f.get("data") or "",
            )
            for f in files
        ]

    async def refuse(self, application_id: str, reason: str | None) -> None:
        await self._client.send_refuse_request(application_id, reason or "")

    async def get_messages(self, application_id: str, new_only: bool = True) -> list[PartnerMessage]:
        raw = await self._client.get_messages(application_id, new_only)
        return [
            PartnerMessage(
                date=m.get("date"),
                sender_name=m.get("senderName"),
                sender_id=m.get("senderID"),
                text=m.get("text") or "",
            )
            for m in raw
        ]

    async def send_message(
        self, application_id: str, text: str, files: list[OrderFile] | None = None
    ) -> None:
        await self._client.send_message(
            application_id, text, [f.model_dump() for f in files] if files else None
        )
