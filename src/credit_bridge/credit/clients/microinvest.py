"""Async client for the Microinvest partner API.

All endpoints are POST. Application-scoped calls identify the application
through an ``applicationID`` header rather than the path or body.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.credit_bridge.credit.clients.base import PartnerClient

logger = structlog.get_logger(__name__)


class MicroinvestClient(PartnerClient):
    """Microinvest loan application API.

    Args:
        base_url: Partner API root.
        partner_id: Partner identifier sent as the ``partnerID`` header.
        api_key: API key sent as the ``apikey`` header.
        verify: TLS verification flag.
    """

    PROVIDER = "microinvest"

    TIMEOUT_CONTROL = 30.0
    TIMEOUT_UPLOAD = 60.0  # SendContracts carries base64 file bodies

    def __init__(
        self,
        base_url: str,
        partner_id: str,
        api_key: str,
        verify: bool = False,
        upload_timeout: float = TIMEOUT_UPLOAD,
    ) -> None:
        super().__init__(
            base_url,
            headers={
                "Content-Type": "application/json; charset=utf-8",
                "Accept": "application/json",
                "apikey": api_key,
                "partnerID": partner_id,
            },
            timeout=self.TIMEOUT_CONTROL,
            verify=verify,
        )
        self._upload_timeout = upload_timeout

    @staticmethod
    def _application_header(application_id: str) -> dict[str, str]:
        return {"applicationID": str(application_id)}

    async def import_loan_application(self, payload: dict[str, Any]) -> dict:
        """Create a loan application.

        Returns:
            Response body; carries ``applicationID`` on success.
        """
        logger.info(
            "microinvest.import_application",
            amount=payload.get("amount"),
            loan_term=payload.get("loanTerm"),
            files_count=len(payload.get("fileAttachmentSet") or []),
        )
        data = await self._call("POST", "/ImportLoanApplication", json=payload)
        if isinstance(data, dict) and data.get("applicationID"):
            logger.info(
                "microinvest.application_created",
                application_id=data["applicationID"],
            )
        return data

    async def check_application_status(self, application_id: str) -> dict | None:
        """Fetch application status.

        Returns:
            Status body, or None while the application is not visible yet (404).
        """
        data = await self._call(
            "POST",
            "/CheckApplicationStatus",
            headers=self._application_header(application_id),
            idempotent=True,
            allow_not_found=True,
        )
        if data is not None:
            logger.debug(
                "microinvest.status_checked",
                application_id=application_id,
                status=data.get("status"),
            )
        return data

    async def get_contracts(self, application_id: str) -> list[dict]:
        """Fetch contract files as ``[{name, data}]`` (base64 data)."""
        data = await self._call(
            "POST",
            "/GetContracts",
            headers=self._application_header(application_id),
            idempotent=True,
        )
        return list((data or {}).get("fileAttachmentSet") or [])

    async def send_contracts(self, application_id: str, files: list[dict]) -> dict:
        data = await self._call(
            "POST",
            "/SendContracts",
            json={"fileAttachmentSet": files},
            headers=self._application_header(application_id),
            timeout=self._upload_timeout,
        )
        logger.info(
            "microinvest.contracts_sent",
            application_id=application_id,
            files_count=len(files),
        )
        return data

    async def send_refuse_request(self, application_id: str, reason: str) -> dict:
        data = await self._call(
            "POST",
            "/SendRefuseRequest",
            json={"reason": reason},
            headers=self._application_header(application_id),
        )
        logger.info("microinvest.refuse_sent", application_id=application_id)
        return data

    async def get_messages(self, application_id: str, new_only: bool = True) -> list[dict]:
        data = await self._call(
            "POST",
            "/GetMessages",
            json={"newMessages": new_only},
            headers=self._application_header(application_id),
            idempotent=True,
        )
        return list((data or {}).get("messageSet") or [])

    async def send_message(
        self, application_id: str, text: str, files: list[dict] | None = None
    ) -> dict:
        payload: dict[str, Any] = {"text": text}
        if files:
            payload["fileAttachmentSet"] = files
        data = await self._call(
            "POST",
            "/SendMessage",
            json=payload,
            headers=self._application_header(application_id),
            timeout=self._upload_timeout if files else None,
        )
        logger.info(
            "microinvest.message_sent",
            application_id=application_id,
            files_count=len(files or []),
        )
        return data
