"""Async client for the Easy Credit partner API.

Control calls are JSON POSTs that carry Login/Password in the body on top
of HTTP basic auth and wrap their result in ``{"response": {...}}``.
Document upload goes to a separate files host as multipart form data.
"""

from __future__ import annotations

import base64
from typing import Any

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from src.credit_bridge.core.exceptions import ProviderCommunicationError
from src.credit_bridge.credit.clients.base import PartnerClient

logger = structlog.get_logger(__name__)

_CONTENT_TYPES = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "tiff": "image/tiff",
    "tif": "image/tiff",
    "bmp": "image/bmp",
    "heic": "image/heic",
}

# Files host answers 401/503 for a short while after a request is created
_TRANSIENT_UPLOAD_STATUSES = (401, 503)


def content_type_for(filename: str) -> str:
    ext = filename.lower().rsplit(".", 1)[-1] if "." in filename else ""
    return _CONTENT_TYPES.get(ext, "application/octet-stream")


def _is_transient_upload_failure(exc: BaseException) -> bool:
    return (
        isinstance(exc, ProviderCommunicationError)
        and exc.status_code in _TRANSIENT_UPLOAD_STATUSES
    )


class _EasyCreditFilesHost(PartnerClient):
    PROVIDER = "easycredit"


class EasyCreditClient(PartnerClient):
    """Easy Credit request API.

    Args:
        base_url: API root; the environment segment is appended.
        files_url: Files host root; the environment segment is appended.
        login: Partner login.
        password: Partner password.
        environment: ``TEST`` or ``PROD`` path segment.
        upload_retry_delay: Seconds between upload retries.
    """

    PROVIDER = "easycredit"

    TIMEOUT_CONTROL = 30.0
    TIMEOUT_FILES = 120.0
    UPLOAD_MAX_RETRIES = 2

    def __init__(
        self,
        base_url: str,
        files_url: str,
        login: str,
        password: str,
        environment: str = "TEST",
        files_timeout: float = TIMEOUT_FILES,
        upload_retry_delay: float = 2.0,
    ) -> None:
        auth = (login, password)
        super().__init__(
            f"{base_url.rstrip('/')}/{environment}",
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=self.TIMEOUT_CONTROL,
            auth=auth,
        )
        self._files = _EasyCreditFilesHost(
            f"{files_url.rstrip('/')}/{environment}",
            timeout=files_timeout,
            auth=auth,
        )
        self._credentials = {"Login": login, "Password": password}
        self._upload_retry_delay = upload_retry_delay

    async def _post(self, path: str, payload: dict[str, Any], **kwargs: Any) -> dict | None:
        data = await self._call("POST", path, json={**self._credentials, **payload}, **kwargs)
        if data is None:
            return None
        return data.get("response") if isinstance(data, dict) else None

    async def create_request(self, payload: dict[str, Any]) -> dict:
        """Create a credit request (Request_v3).

        Returns:
            Inner response; ``Status == "OK"`` and ``URN`` on success.
        """
        logger.info(
            "easycredit.create_request",
            amount=payload.get("CreditAmount"),
            term=payload.get("NumberOfInstallments"),
            product=payload.get("Product"),
        )
        response = await self._post("/Request_v3", payload) or {}
        if response.get("URN"):
            logger.info("easycredit.request_created", urn=response["URN"])
        return response

    async def check_status(self, urn: str) -> dict | None:
        """Fetch request status (URNStatus_v2); None when the URN is unknown."""
        response = await self._post(
            "/URNStatus_v2", {"URN": urn}, idempotent=True, allow_not_found=True
        )
        if response is not None:
            logger.debug(
                "easycredit.status_checked",
                urn=urn,
                request_status=response.get("RequestStatus"),
                document_status=response.get("DocumentStatus"),
            )
        return response

    async def get_contract(self, urn: str, language: str = "RO") -> dict:
        """Fetch generated documents (ECM_GetDocs_V2); contract is ``DocTypeA``."""
        return await self._post(
            "/ECM_GetDocs_V2", {"URN": urn, "Language": language}, idempotent=True
        ) or {}

    async def cancel_request(self, urn: str) -> dict:
        response = await self._post("/ECM_CancelRequest", {"URN": urn}) or {}
        logger.info("easycredit.request_canceled", urn=urn)
        return response

    async def _upload_once(self, urn: str, files: list[dict]) -> dict:
        multipart = [
            (
                "files",
                (f["name"], base64.b64decode(f["data"]), content_type_for(f["name"])),
            )
            for f in files
        ]
        return await self._files._call(
            "POST",
            "/files/upload",
            data={**self._credentials, "URN": urn},
            files=multipart,
        )

    async def upload_files(self, urn: str, files: list[dict]) -> dict:
        """Upload base64 files to a request.

        Retries up to UPLOAD_MAX_RETRIES times on 401/503 with a fixed delay.

        Raises:
            ProviderCommunicationError: When the upload still fails.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.UPLOAD_MAX_RETRIES + 1),
            wait=wait_fixed(self._upload_retry_delay),
            retry=retry_if_exception(_is_transient_upload_failure),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "easycredit.upload_retry",
                        urn=urn,
                        attempt=attempt.retry_state.attempt_number,
                    )
                data = await self._upload_once(urn, files)
        logger.info("easycredit.files_uploaded", urn=urn, files_count=len(files))
        return data
