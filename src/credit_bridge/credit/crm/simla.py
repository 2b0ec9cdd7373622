"""Simla (RetailCRM API v5) implementation of CRMClient.

Reads are GETs with the API key as a query parameter; writes are
form-encoded POSTs whose entity payload is a JSON string. Every call
goes through _request, which retries idempotent reads on transport
errors and turns failures into CRMCommunicationError.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.credit_bridge.core.exceptions import CRMCommunicationError
from src.credit_bridge.credit.crm.adapter import CRMClient
from src.credit_bridge.credit.schemas import CreditPayment, OrderData, OrderFile

logger = structlog.get_logger(__name__)

_simla_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)

CREDIT_PAYMENT_TYPES = ("credit", "kredit-onlain")

# CRM credit-company codes queried for active applications
ACTIVE_APPLICATION_COMPANIES = ("microinvest", "easycredit", "iutecredit")

# Payment statuses of orders whose application can still change
ACTIVE_PAYMENT_STATUSES = (
    "not-paid",
    "credit-check",
    "credit-approved",
    "conditions-changed",
    "credit-declined",
)

EXCLUDED_ORDER_STATUS = "delivering"

_CONTRACT_NAME_MARKERS = ("contract", "договор")
_CONTRACT_EXACT_NAMES = ("client.pdf", "microinvest.pdf")

_UPLOAD_CONTENT_TYPES = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


@dataclass(frozen=True)
class CrmFieldMap:
    """Custom field codes the credit flow reads and writes."""

    idnp: str = "indp"
    name: str = "name"
    surname: str = "surname"
    birthday: str = "birthday"
    residence: str = "residence"
    credit_company: str = "credit_company"
    credit_term: str = "credit_term"
    zero_credit: str = "zero_credit"
    loan_application_id: str = "loan_application_id"


def is_contract_file(filename: str | None) -> bool:
    name = (filename or "").lower()
    return any(m in name for m in _CONTRACT_NAME_MARKERS) or name in _CONTRACT_EXACT_NAMES


def _parse_crm_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.debug("simla.unparsable_datetime", value=value)
        return None


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, list):
        return str(value[0]) if value else None
    return str(value)


def _is_truthy_flag(value: Any) -> bool:
    return value is True or value == "true"


class SimlaClient(CRMClient):
    """Async Simla API v5 client.

    Args:
        base_url: API root, e.g. ``https://shop.simla.com/api/v5``.
        api_key: Simla API key.
        fields: Custom field codes.
        timeout: Per-request timeout in seconds.
    """

    TIMEOUT_READ = 30.0
    TIMEOUT_FILES = 120.0
    PAGE_LIMIT = 100

    def __init__(
        self,
        base_url: str,
        api_key: str,
        fields: CrmFieldMap | None = None,
        timeout: float = TIMEOUT_READ,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.fields = fields or CrmFieldMap()
        self._timeout = timeout
        self._users_cache: dict[int, dict] = {}

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(timeout=timeout)

    async def _send(self, method: str, path: str, *, timeout: float, **kwargs: Any) -> httpx.Response:
        async with self._client(timeout) as client:
            return await client.request(method, f"{self._base_url}{path}", **kwargs)

    @_simla_retry
    async def _send_idempotent(
        self, method: str, path: str, *, timeout: float, **kwargs: Any
    ) -> httpx.Response:
        return await self._send(method, path, timeout=timeout, **kwargs)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        allow_not_found: bool = False,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> dict | None:
        """Send a request with the API key and return the decoded body.

        Raises:
            CRMCommunicationError: On transport failure, non-2xx status, or
                a body with ``success: false``.
        """
        query: list[tuple[str, Any]] = [("apiKey", self._api_key)]
        if isinstance(params, dict):
            query.extend(params.items())
        elif params:
            query.extend(params)

        send = self._send_idempotent if method == "GET" else self._send
        try:
            response = await send(
                method, path, timeout=timeout or self._timeout, params=query, **kwargs
            )
        except httpx.HTTPError as exc:
            logger.error("simla.transport_error", path=path, error=str(exc))
            raise CRMCommunicationError(f"CRM request {path} failed: {exc}") from exc

        if allow_not_found and response.status_code == 404:
            return None

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if response.is_error or (isinstance(body, dict) and body.get("success") is False):
            message = body.get("errorMsg") if isinstance(body, dict) else None
            logger.error(
                "simla.request_failed",
                path=path,
                status_code=response.status_code,
                error=message,
            )
            raise CRMCommunicationError(
                message or f"CRM request {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return body

    async def _post_form(self, path: str, form: dict[str, Any], site: str | None = None) -> dict:
        data = {k: json.dumps(v) if isinstance(v, (dict, list)) else v for k, v in form.items()}
        if site:
            data["site"] = site
        return await self._request("POST", path, data=data) or {}

    async def _resolve_site(self, order_id: int, site: str | None) -> str:
        if site:
            return site
        order = await self.get_order(order_id)
        resolved = (order or {}).get("site")
        if not resolved:
            raise CRMCommunicationError(f"Cannot resolve site for order {order_id}")
        return resolved

    # ── Orders ──────────────────────────────────────────────────────────────

    async def get_order(self, order_id: int) -> dict[str, Any] | None:
        body = await self._request(
            "GET", f"/orders/{order_id}", params={"by": "id"}, allow_not_found=True
        )
        if body is None:
            return None
        return body.get("order")

    def find_credit_payment(self, order: dict[str, Any]) -> CreditPayment | None:
        for payment_id, payment in (order.get("payments") or {}).items():
            if payment.get("type") in CREDIT_PAYMENT_TYPES:
                amount = payment.get("amount")
                return CreditPayment(
                    id=str(payment.get("id") or payment_id),
                    type=payment.get("type"),
                    amount=float(amount) if amount not in (None, "") else None,
                    status=payment.get("status"),
                )
        return None

    def extract_order_data(self, order: dict[str, Any]) -> OrderData:
        cf = order.get("customFields") or {}
        f = self.fields
        credit_company = cf.get(f.credit_company)
        if isinstance(credit_company, list):
            credit_company = credit_company[0] if credit_company else None
        return OrderData(
            order_id=int(order["id"]),
            order_number=_optional_str(order.get("number")),
            site=order.get("site"),
            phone=_optional_str(order.get("phone")),
            idnp=_optional_str(cf.get(f.idnp)),
            name=_optional_str(cf.get(f.name)),
            surname=_optional_str(cf.get(f.surname)),
            birthday=_optional_str(cf.get(f.birthday)),
            residence=_optional_str(cf.get(f.residence)),
            credit_company=_optional_str(credit_company),
            credit_term=_optional_str(cf.get(f.credit_term)),
            zero_credit=_is_truthy_flag(cf.get(f.zero_credit)),
            loan_application_id=_optional_str(cf.get(f.loan_application_id)),
            payment=self.find_credit_payment(order),
            order_status=order.get("status"),
            manager_id=order.get("managerId"),
            created_at=_parse_crm_datetime(order.get("createdAt")),
            total_summ=order.get("totalSumm"),
            items=list(order.get("items") or []),
        )

    async def get_orders_with_active_applications(self) -> list[dict[str, Any]]:
        """Query every provider x active payment status and de-duplicate.

        Orders without an application id or in the delivering status are
        dropped.
        """
        seen: set[int] = set()
        orders: list[dict[str, Any]] = []
        for company in ACTIVE_APPLICATION_COMPANIES:
            for status in ACTIVE_PAYMENT_STATUSES:
                body = await self._request(
                    "GET",
                    "/orders",
                    params=[
                        (f"filter[customFields][{self.fields.credit_company}][]", company),
                        ("filter[paymentStatuses][]", status),
                        ("limit", self.PAGE_LIMIT),
                    ],
                )
                for order in (body or {}).get("orders") or []:
                    application_id = (order.get("customFields") or {}).get(
                        self.fields.loan_application_id
                    )
                    if not application_id:
                        continue
                    if order.get("status") == EXCLUDED_ORDER_STATUS:
                        continue
                    if order["id"] in seen:
                        continue
                    seen.add(order["id"])
                    orders.append(order)

        logger.debug("simla.active_orders_found", count=len(orders))
        return orders

    async def update_order_custom_fields(
        self, order_id: int, fields: dict[str, Any], site: str | None
    ) -> None:
        site = await self._resolve_site(order_id, site)
        await self._post_form(
            f"/orders/{order_id}/edit",
            {"by": "id", "order": {"customFields": fields}},
            site=site,
        )
        logger.debug("simla.custom_fields_updated", order_id=order_id, fields=list(fields))

    async def update_order_with_application_id(
        self,
        order_id: int,
        application_id: str,
        site: str | None,
        credit_company: str | None = None,
    ) -> None:
        fields = {self.fields.loan_application_id: application_id}
        if credit_company:
            fields[self.fields.credit_company] = credit_company
        await self.update_order_custom_fields(order_id, fields, site)

    async def update_payment_status(
        self, order_id: int, payment_id: str, status: str, site: str | None
    ) -> None:
        site = await self._resolve_site(order_id, site)
        await self._post_form(
            f"/orders/payments/{payment_id}/edit", {"payment": {"status": status}}, site=site
        )
        logger.info(
            "simla.payment_status_updated",
            order_id=order_id,
            payment_id=payment_id,
            status=status,
        )

    async def update_order_status(self, order_id: int, status: str, site: str | None) -> None:
        site = await self._resolve_site(order_id, site)
        await self._post_form(
            f"/orders/{order_id}/edit", {"by": "id", "order": {"status": status}}, site=site
        )
        logger.info("simla.order_status_updated", order_id=order_id, status=status)

    # ── Files ───────────────────────────────────────────────────────────────

    async def get_order_files(self, order_id: int, site: str | None) -> list[dict]:
        site = await self._resolve_site(order_id, site)
        body = await self._request(
            "GET",
            "/files",
            params=[
                ("filter[orderIds][]", order_id),
                ("filter[sites][]", site),
                ("limit", self.PAGE_LIMIT),
            ],
        )
        return list((body or {}).get("files") or [])

    async def download_file(self, file_id: int) -> str:
        """Download a file and return its body base64-encoded."""
        try:
            response = await self._send_idempotent(
                "GET",
                f"/files/{file_id}/download",
                timeout=self.TIMEOUT_FILES,
                params={"apiKey": self._api_key},
            )
        except httpx.HTTPError as exc:
            raise CRMCommunicationError(f"File {file_id} download failed: {exc}") from exc
        if response.is_error:
            raise CRMCommunicationError(
                f"File {file_id} download returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return base64.b64encode(response.content).decode("ascii")

    async def get_order_files_as_base64(self, order_id: int, site: str | None) -> list[OrderFile]:
        result: list[OrderFile] = []
        for file in await self.get_order_files(order_id, site):
            data = await self.download_file(file["id"])
            result.append(OrderFile(name=file.get("filename") or f"file_{file['id']}", data=data))
        return result

    async def upload_file_to_order(self, order_id: int, file: OrderFile, site: str | None) -> None:
        content = base64.b64decode(file.data)
        if not content:
            raise CRMCommunicationError(f"File {file.name} is empty")

        ext = file.name.lower().rsplit(".", 1)[-1] if "." in file.name else ""
        body = await self._request(
            "POST",
            "/files/upload",
            content=content,
            headers={"Content-Type": _UPLOAD_CONTENT_TYPES.get(ext, "application/octet-stream")},
            timeout=self.TIMEOUT_FILES,
        )
        file_id = ((body or {}).get("file") or {}).get("id")
        if not file_id:
            raise CRMCommunicationError("No file id in CRM upload response")

        await self._post_form(
            f"/files/{file_id}/edit",
            {"file": {"filename": file.name, "attachment": [{"order": {"id": order_id}}]}},
        )
        logger.info("simla.file_attached", order_id=order_id, file_name=file.name, file_id=file_id)

    async def check_order_has_contract_files(self, order_id: int, site: str | None) -> bool:
        files = await self.get_order_files(order_id, site)
        return any(is_contract_file(f.get("filename")) for f in files)

    # ── Users ───────────────────────────────────────────────────────────────

    async def _get_user(self, user_id: int) -> dict | None:
        if user_id in self._users_cache:
            return self._users_cache[user_id]
        try:
            body = await self._request("GET", f"/users/{user_id}", allow_not_found=True)
        except CRMCommunicationError as exc:
            logger.warning("simla.user_lookup_failed", user_id=user_id, error=str(exc))
            return None
        user = (body or {}).get("user")
        if user:
            self._users_cache[user_id] = user
        return user

    async def get_manager_name(self, manager_id: int | None) -> str | None:
        if not manager_id:
            return None
        user = await self._get_user(manager_id)
        if not user:
            return None
        return f"{user.get('firstName') or ''} {user.get('lastName') or ''}".strip() or None

    async def get_user_name(self, user_id: int) -> str | None:
        user = await self._get_user(user_id)
        if not user:
            return None
        parts = [p for p in (user.get("firstName"), user.get("lastName")) if p]
        if parts:
            return " ".join(parts)
        return user.get("email") or f"User #{user_id}"

    # ── History ─────────────────────────────────────────────────────────────

    async def get_orders_history(
        self, since_id: int | None = None, limit: int = PAGE_LIMIT
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, Any]] = [("limit", limit)]
        if since_id:
            params.append(("filter[sinceId]", since_id))
        body = await self._request("GET", "/orders/history", params=params)
        return list((body or {}).get("history") or [])
