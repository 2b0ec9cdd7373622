"""Async client for the Iute physical-partner API."""

from __future__ import annotations

from typing import Any

import structlog

from src.credit_bridge.credit.clients.base import PartnerClient

logger = structlog.get_logger(__name__)

_PARTNER_PATH = "/api/v1/physical-api-partners"


class IuteClient(PartnerClient):
    """Iute order API.

    The customer confirms or cancels in the MyIute app; Iute then calls the
    webhook URLs passed in the merchant block of each order.

    Args:
        base_url: Partner API root.
        api_key: Key sent verbatim in the Authorization header.
        pos_id: Point-of-sale identifier.
        salesman_id: Salesman identifier.
        webhook_base_url: Public root of this service for confirm/cancel callbacks.
    """

    PROVIDER = "iute"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        pos_id: str,
        salesman_id: str,
        webhook_base_url: str,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(
            base_url,
            headers={"Content-Type": "application/json", "Authorization": api_key},
            timeout=timeout,
        )
        self._pos_id = pos_id
        self._salesman_id = salesman_id
        self._webhook_base_url = webhook_base_url.rstrip("/")

    def build_order_payload(
        self,
        reference: str,
        phone: str,
        amount: float,
        items: list[dict[str, Any]],
        currency: str = "MDL",
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "myiutePhone": phone,
            "orderId": reference,
            "totalAmount": amount,
            "currency": currency,
            "merchant": {
                "posIdentifier": self._pos_id,
                "salesmanIdentifier": self._salesman_id,
                "userConfirmationUrl": f"{self._webhook_base_url}/api/v1/webhooks/iute/confirm",
                "userCancelUrl": f"{self._webhook_base_url}/api/v1/webhooks/iute/cancel",
            },
        }
        if items:
            payload["items"] = items
        return payload

    async def create_order(self, payload: dict[str, Any]) -> dict:
        """Create an order; response carries ``status`` and ``myiuteCustomer``."""
        logger.info(
            "iute.create_order",
            reference=payload.get("orderId"),
            amount=payload.get("totalAmount"),
        )
        data = await self._call("POST", f"{_PARTNER_PATH}/order", json=payload)
        logger.info(
            "iute.order_created",
            reference=payload.get("orderId"),
            status=data.get("status"),
            myiute_customer=data.get("myiuteCustomer"),
        )
        return data

    async def get_order_status(self, reference: str) -> dict | None:
        """Fetch order status; None when Iute does not know the order yet."""
        return await self._call(
            "GET",
            f"{_PARTNER_PATH}/orders/{reference}/status",
            idempotent=True,
            allow_not_found=True,
        )

    async def withdraw_order(self, reference: str) -> dict:
        data = await self._call("POST", f"{_PARTNER_PATH}/orders/{reference}/withdraw")
        logger.info("iute.order_withdrawn", reference=reference)
        return data
