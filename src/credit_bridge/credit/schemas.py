"""Pydantic schemas for credit applications, bank statuses, and the feed.

Defines all structured types shared by the orchestrator, reconciliation
engine, and feed store:
- Enums: ProviderId, CrmStatus, StatusType, HistorySource
- CRM view: CreditPayment, OrderData, OrderFile, ManagerContext
- Bank view: LoanTerms, Comparison, BankStatus, SubmissionOutcome
- Store payloads: FeedItemData, FeedFilter, StatusHistoryCreate/Read,
  ApplicationRequestCreate/Read, SentMessageCreate/Read
- Operation results: SubmissionResult, StatusCheckResult, BatchResult,
  FeedSyncResult, CachedFeed, ContractsResult, MessagesResult,
  ComparisonResult, HistorySyncResult
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class ProviderId(str, Enum):
    """Credit providers an order can be routed to."""

    MICROINVEST = "microinvest"
    EASYCREDIT = "easycredit"
    IUTE = "iute"


# CRM selector values that name a provider under a legacy code
PROVIDER_ALIASES: dict[str, ProviderId] = {
    "iutecredit": ProviderId.IUTE,
}


# Order lifecycle statuses that move a feed row into the archive view
ARCHIVED_ORDER_STATUSES: frozenset[str] = frozenset({
    "delivering",
    "delivered",
    "complete",
    "shipped",
    "no-call",
    "no-product",
    "already-buyed",
    "delyv-did-not-suit",
    "prices-did-not-suit",
    "cancel-other",
    "purchase-return",
    "ne-zabral-zakaz",
})


class CrmStatus(str, Enum):
    """Canonical payment statuses written back to the CRM."""

    CREDIT_CHECK = "credit-check"
    CREDIT_APPROVED = "credit-approved"
    CONDITIONS_CHANGED = "conditions-changed"
    CREDIT_DECLINED = "credit-declined"
    SIGNED_ONLINE = "signed-online"
    PAID = "paid"


class StatusType(str, Enum):
    """Which side of the integration a history row describes."""

    BANK = "bank"
    CRM = "crm"


class HistorySource(str, Enum):
    """What caused a status transition."""

    API = "api"
    CRON = "cron"
    WEBHOOK = "webhook"
    USER = "user"


# ── CRM View ────────────────────────────────────────────────────────────────


class CreditPayment(BaseModel):
    """The credit-type payment attached to an order."""

    id: str
    type: str | None = None
    amount: float | None = None
    status: str | None = None


class OrderData(BaseModel):
    """Normalized order fields the credit flow depends on."""

    order_id: int
    order_number: str | None = None
    site: str | None = None
    phone: str | None = None
    idnp: str | None = None
    name: str | None = None
    surname: str | None = None
    birthday: str | None = None
    residence: str | None = None
    credit_company: str | None = None
    credit_term: str | None = None
    zero_credit: bool = False
    loan_application_id: str | None = None
    payment: CreditPayment | None = None
    order_status: str | None = None
    manager_id: int | None = None
    created_at: datetime | None = None
    total_summ: float | None = None
    items: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def credit_term_months(self) -> int:
        """Credit term as an int; missing or unparsable values become 0."""
        try:
            return int(str(self.credit_term).strip())
        except (TypeError, ValueError):
            return 0

    @property
    def requested_amount(self) -> float:
        if self.payment is None or not self.payment.amount:
            return 0.0
        return float(self.payment.amount)

    @property
    def customer_name(self) -> str:
        return f"{self.name or ''} {self.surname or ''}".strip() or "-"


class OrderFile(BaseModel):
    """File attached to an order or returned by a bank, base64-encoded."""

    name: str
    data: str


class ManagerContext(BaseModel):
    """CRM manager on whose behalf an action is taken."""

    manager_id: int | None = None
    manager_name: str | None = None


# ── Bank View ───────────────────────────────────────────────────────────────


class LoanTerms(BaseModel):
    """Amount, term, and product type of a loan (requested or approved)."""

    amount: float = 0.0
    term: int = 0
    product_type: str = "retail"


class Comparison(BaseModel):
    """Requested vs approved loan terms, stored on the feed item."""

    requested: LoanTerms = Field(default_factory=LoanTerms)
    approved: LoanTerms | None = None


class BankStatus(BaseModel):
    """Provider status normalized to the fields reconciliation branches on."""

    raw_status: str
    approved: LoanTerms | None = None
    document_status: str | None = None
    message: str | None = None
    customer_name: str | None = None


class SubmissionOutcome(BaseModel):
    """What a provider adapter reports after creating an application."""

    application_id: str
    request_data: dict[str, Any] = Field(default_factory=dict)
    initial_status: str | None = None
    message: str | None = None
    myiute_customer: bool | None = None


# ── Store Payloads ──────────────────────────────────────────────────────────


class FeedItemData(BaseModel):
    """One cached feed row, keyed by order_id."""

    order_id: int
    order_number: str | None = None
    application_id: str
    credit_company: str | None = None
    customer_name: str | None = None
    bank_status: str | None = None
    document_status: str | None = None
    crm_status: str | None = None
    payment_type: str | None = None
    order_status: str | None = None
    manager_id: int | None = None
    manager_name: str | None = None
    conditions_changed: bool = False
    comparison: Comparison | None = None
    order_created_at: datetime | None = None
    last_updated: datetime | None = None


class FeedFilter(BaseModel):
    """Filter criteria for cached feed reads. None means "any"."""

    archive: bool | None = None
    bank_status: str | None = None
    credit_company: str | None = None
    conditions_changed: bool | None = None


class StatusHistoryCreate(BaseModel):
    """Schema for appending a status transition."""

    application_id: str
    status_type: StatusType
    old_status: str | None = None
    new_status: str
    source: HistorySource
    details: str | None = None
    manager_id: int | None = None
    manager_name: str | None = None


class StatusHistoryRead(StatusHistoryCreate):
    """Persisted status transition."""

    id: int
    created_at: datetime | None = None


class ApplicationRequestCreate(BaseModel):
    """Audit copy of the payload submitted to a provider."""

    order_id: int
    application_id: str
    credit_company: str
    request_data: dict[str, Any] = Field(default_factory=dict)
    files_count: int = 0
    file_names: list[str] = Field(default_factory=list)


class ApplicationRequestRead(ApplicationRequestCreate):
    id: int
    created_at: datetime | None = None


class SentMessageCreate(BaseModel):
    """Partner-chat message sent by a CRM manager."""

    application_id: str
    message_text: str
    manager_id: int
    manager_name: str


class SentMessageRead(SentMessageCreate):
    id: int
    sent_at: datetime | None = None


# ── Operation Results ───────────────────────────────────────────────────────


class SubmissionResult(BaseModel):
    """Result of submitting an application.

    files_uploaded=False with warnings marks a partial success: the
    application exists at the provider but its documents did not arrive.
    """

    order_id: int
    application_id: str
    credit_company: ProviderId
    files_count: int = 0
    files_uploaded: bool = True
    bank_status: str | None = None
    message: str | None = None
    warnings: list[str] = Field(default_factory=list)
    success: bool = True


class StatusCheckResult(BaseModel):
    """Outcome of reconciling one order against its provider."""

    order_id: int
    application_id: str
    credit_company: ProviderId
    bank_status: str
    document_status: str | None = None
    crm_status: CrmStatus
    is_final: bool = False
    conditions_changed: bool = False
    updated: bool = False


class BatchError(BaseModel):
    order_id: int
    error: str


class BatchResult(BaseModel):
    """Per-item outcome of a reconciliation pass (never all-or-nothing)."""

    total: int = 0
    updated: int = 0
    final: int = 0
    results: list[StatusCheckResult] = Field(default_factory=list)
    errors: list[BatchError] = Field(default_factory=list)
    # Feed rows observed during the pass, handed to the feed sync
    snapshots: list[FeedItemData] = Field(default_factory=list, exclude=True)
    active_order_ids: list[int] = Field(default_factory=list, exclude=True)


class FeedSyncResult(BaseModel):
    synced: int = 0
    stale_updated: int = 0
    failed: int = 0
    last_sync: datetime | None = None


class CachedFeed(BaseModel):
    items: list[FeedItemData] = Field(default_factory=list)
    last_sync: datetime | None = None
    count: int = 0


class ContractsResult(BaseModel):
    order_id: int
    application_id: str
    files: list[OrderFile] = Field(default_factory=list)
    attached: list[str] = Field(default_factory=list)
    success: bool = True


class FilesSentResult(BaseModel):
    order_id: int
    application_id: str
    credit_company: ProviderId
    files_count: int
    success: bool = True


class OrderStatusUpdateResult(BaseModel):
    order_id: int
    new_status: str
    success: bool = True


class RefusalResult(BaseModel):
    order_id: int
    application_id: str
    credit_company: ProviderId
    success: bool = True


class PartnerMessage(BaseModel):
    date: str | None = None
    sender_name: str | None = None
    sender_id: str | None = None
    text: str
    manager_id: int | None = None
    manager_name: str | None = None


class MessagesResult(BaseModel):
    order_id: int
    application_id: str
    messages: list[PartnerMessage] = Field(default_factory=list)
    success: bool = True


class ComparisonResult(BaseModel):
    """Live requested-vs-approved view for one order."""

    order_id: int
    has_application: bool
    credit_company: ProviderId | None = None
    application_id: str | None = None
    bank_status: str | None = None
    document_status: str | None = None
    crm_status: str | None = None
    requested: LoanTerms | None = None
    approved: LoanTerms | None = None
    amount_match: bool | None = None
    term_match: bool | None = None
    product_match: bool | None = None
    has_changes: bool | None = None
    customer_name: str | None = None
    success: bool = True


class HistorySyncResult(BaseModel):
    processed: int = 0
    saved: int = 0
    error: str | None = None
