"""CRM client abstract base class -- the order-side interface the credit flow needs.

The orchestrator, reconciliation engine, and feed sync depend only on
this ABC; SimlaClient is the production implementation and tests use
AsyncMock stand-ins.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.credit_bridge.credit.schemas import CreditPayment, OrderData, OrderFile


class CRMClient(ABC):
    """Abstract interface for CRM order operations.

    Methods:
        get_order: Fetch a raw order by id (None when missing).
        extract_order_data: Normalize a raw order into OrderData.
        find_credit_payment: Locate the credit-type payment of a raw order.
        get_orders_with_active_applications: Orders with a linked application.
        get_order_files_as_base64: Files attached to an order.
        upload_file_to_order: Attach a file to an order.
        update_order_with_application_id: Record the application linkage.
        update_order_custom_fields: Write arbitrary custom fields.
        update_payment_status: Set a payment's status.
        update_order_status: Set an order's lifecycle status.
        check_order_has_contract_files: Whether a contract is already attached.
        get_manager_name: Display name of a manager (cached).
        get_user_name: Display name of any CRM user (cached).
        get_orders_history: Order change log since a cursor.
    """

    @abstractmethod
    async def get_order(self, order_id: int) -> dict[str, Any] | None:
        """Fetch raw order by id."""
        ...

    @abstractmethod
    def extract_order_data(self, order: dict[str, Any]) -> OrderData:
        """Normalize a raw order."""
        ...

    @abstractmethod
    def find_credit_payment(self, order: dict[str, Any]) -> CreditPayment | None:
        """First payment of a credit type, or None."""
        ...

    @abstractmethod
    async def get_orders_with_active_applications(self) -> list[dict[str, Any]]:
        """De-duplicated orders that carry an application id."""
        ...

    @abstractmethod
    async def get_order_files_as_base64(self, order_id: int, site: str | None) -> list[OrderFile]:
        """Download every file attached to the order."""
        ...

    @abstractmethod
    async def upload_file_to_order(self, order_id: int, file: OrderFile, site: str | None) -> None:
        """Upload a base64 file and attach it to the order."""
        ...

    @abstractmethod
    async def update_order_with_application_id(
        self,
        order_id: int,
        application_id: str,
        site: str | None,
        credit_company: str | None = None,
    ) -> None:
        """Write the loan application id, and the provider selector when given."""
        ...

    @abstractmethod
    async def update_order_custom_fields(
        self, order_id: int, fields: dict[str, Any], site: str | None
    ) -> None:
        """Write custom fields on the order."""
        ...

    @abstractmethod
    async def update_payment_status(
        self, order_id: int, payment_id: str, status: str, site: str | None
    ) -> None:
        """Set the payment status."""
        ...

    @abstractmethod
    async def update_order_status(self, order_id: int, status: str, site: str | None) -> None:
        """Set the order lifecycle status."""
        ...

    @abstractmethod
    async def check_order_has_contract_files(self, order_id: int, site: str | None) -> bool:
        """Whether the order already has a contract file attached."""
        ...

    @abstractmethod
    async def get_manager_name(self, manager_id: int | None) -> str | None:
        """Manager display name, or None."""
        ...

    @abstractmethod
    async def get_user_name(self, user_id: int) -> str | None:
        """User display name, or None."""
        ...

    @abstractmethod
    async def get_orders_history(
        self, since_id: int | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Order change records with id greater than since_id."""
        ...
