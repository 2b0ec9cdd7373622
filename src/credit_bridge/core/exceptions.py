"""Error taxonomy for submission and reconciliation.

Messages on ValidationError and DuplicateSubmissionError are shown to CRM
managers verbatim, so they must name the offending field or order.
"""

from __future__ import annotations


class CreditBridgeError(Exception):
    """Base class for all credit-bridge errors."""


class ValidationError(CreditBridgeError):
    """Order data is missing or invalid. User-correctable."""


class DuplicateSubmissionError(CreditBridgeError):
    """A submission for this order is in flight or already exists."""

    def __init__(self, order_id: int | str, message: str | None = None) -> None:
        self.order_id = order_id
        super().__init__(message or f"Application for order {order_id} is already being submitted")


class ProviderCommunicationError(CreditBridgeError):
    """HTTP or network failure talking to a credit provider.

    Carries the partner's own error message when one could be extracted
    from the response body.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        provider_message: str | None = None,
    ) -> None:
        super().__init__(provider_message or message)
        self.provider = provider
        self.status_code = status_code
        self.provider_message = provider_message


class CRMCommunicationError(CreditBridgeError):
    """HTTP or network failure talking to the CRM."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(CreditBridgeError):
    """Linkage or store write failed.

    Raised loudly when the provider already holds the application but the
    link could not be recorded; the record then has to be reconciled
    against the provider by hand.
    """

    def __init__(self, message: str, *, application_id: str | None = None) -> None:
        super().__init__(message)
        self.application_id = application_id


class UnsupportedOperationError(CreditBridgeError):
    """The provider does not offer this operation."""
