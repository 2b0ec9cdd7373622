"""Provider adapter abstract base class.

Every credit provider implements this ABC. An adapter owns everything
provider-specific: the status vocabulary (via an injected StatusTable),
the conditions-changed predicate, order validation beyond the common
personal-data checks, payload shape, and the calls to its HTTP client.
The orchestrator and reconciliation engine only ever talk to this
interface, selected by ProviderId.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from src.credit_bridge.core.exceptions import UnsupportedOperationError
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

# Returned by map_status for raw statuses missing from the table
UNMAPPED = None


@dataclass(frozen=True)
class StatusTable:
    """Immutable status vocabulary of one provider.

    Attributes:
        mapping: Raw provider status -> canonical CRM status.
        final: Raw statuses after which the application never changes.
        approved_like: Raw statuses for which approved terms are meaningful.
        approval_status: Raw status that triggers the conditions-changed check.
    """

    mapping: Mapping[str, CrmStatus]
    final: frozenset[str] = field(default_factory=frozenset)
    approved_like: frozenset[str] = field(default_factory=frozenset)
    approval_status: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "mapping", MappingProxyType(dict(self.mapping)))
        object.__setattr__(self, "final", frozenset(self.final))
        object.__setattr__(self, "approved_like", frozenset(self.approved_like))


class ProviderAdapter(ABC):
    """Abstract interface for one credit provider.

    Class attributes declare which common preconditions apply:
        requires_personal_data: IDNP, Latin name/surname, birthday.
        requires_payment: a credit-type payment on the order.
        attaches_documents: order files are fetched and sent on submission.
        uploads_after_submit: documents go in a separate call after creation.
        supports_messages: partner chat is available.
    """

    provider_id: ProviderId
    requires_personal_data: bool = True
    requires_payment: bool = True
    attaches_documents: bool = True
    uploads_after_submit: bool = False
    supports_messages: bool = False

    def __init__(self, table: StatusTable) -> None:
        self._table = table

    @property
    def table(self) -> StatusTable:
        return self._table

    # ── Status Vocabulary ───────────────────────────────────────────────────

    def map_status(self, raw_status: str | None) -> CrmStatus | None:
        """Map a raw provider status to its canonical CRM status, or UNMAPPED."""
        if raw_status is None:
            return UNMAPPED
        return self._table.mapping.get(raw_status, UNMAPPED)

    def is_final(self, raw_status: str | None) -> bool:
        return raw_status in self._table.final

    def is_approved_like(self, raw_status: str | None) -> bool:
        return raw_status in self._table.approved_like

    def is_approval(self, raw_status: str | None) -> bool:
        return (
            self._table.approval_status is not None
            and raw_status == self._table.approval_status
        )

    # ── Conditions Comparison ───────────────────────────────────────────────

    def requested_terms(self, order: OrderData) -> LoanTerms:
        """Terms the customer asked for; missing values become 0."""
        return LoanTerms(
            amount=order.requested_amount,
            term=order.credit_term_months,
            product_type="retail",
        )

    def amount_matches(self, requested: float, approved: float) -> bool:
        return requested == approved

    def term_matches(self, requested: int, approved: int) -> bool:
        return requested == approved

    def product_matches(self, requested: str, approved: str) -> bool:
        return requested == approved

    def conditions_changed(self, requested: LoanTerms, approved: LoanTerms | None) -> bool:
        """True when the bank approved terms other than those requested."""
        if approved is None:
            return False
        return not (
            self.amount_matches(requested.amount, approved.amount)
            and self.term_matches(requested.term, approved.term)
            and self.product_matches(requested.product_type, approved.product_type)
        )

    # ── Submission ──────────────────────────────────────────────────────────

    def validate(self, order: OrderData, files: list[OrderFile]) -> None:
        """Provider-specific preconditions; raise ValidationError to reject."""

    @abstractmethod
    def application_reference(self, order: OrderData) -> str | None:
        """Reference chosen by us before submission, or None if the provider assigns it."""
        ...

    @abstractmethod
    async def submit(self, order: OrderData, files: list[OrderFile]) -> SubmissionOutcome:
        """Create the application at the provider."""
        ...

    async def upload_documents(self, application_id: str, files: list[OrderFile]) -> None:
        """Send supporting documents to an existing application."""
        raise UnsupportedOperationError(
            f"{self.provider_id.value} does not accept document uploads"
        )

    # ── Status & Follow-up ──────────────────────────────────────────────────

    @abstractmethod
    async def get_status(self, application_id: str) -> BankStatus | None:
        """Current bank status, or None when not available yet."""
        ...

    async def get_contracts(self, application_id: str) -> list[OrderFile]:
        raise UnsupportedOperationError(
            f"{self.provider_id.value} does not provide contract documents"
        )

    @abstractmethod
    async def refuse(self, application_id: str, reason: str | None) -> None:
        """Withdraw or refuse the application at the provider."""
        ...

    async def get_messages(self, application_id: str, new_only: bool = True) -> list[PartnerMessage]:
        raise UnsupportedOperationError(
            f"{self.provider_id.value} does not support partner messages"
        )

    async def send_message(
        self, application_id: str, text: str, files: list[OrderFile] | None = None
    ) -> None:
        raise UnsupportedOperationError(
            f"{self.provider_id.value} does not support sending messages"
        )
