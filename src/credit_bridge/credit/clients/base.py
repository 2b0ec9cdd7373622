"""Shared httpx plumbing for credit provider clients.

Every partner call goes through PartnerClient._call, which:
- opens a short-lived httpx.AsyncClient with the operation's timeout
- retries idempotent reads on transport errors (tenacity, 3 attempts,
  exponential backoff 1-10s)
- turns HTTP and transport failures into ProviderCommunicationError,
  carrying the partner's own error message when the body has one
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.credit_bridge.core.exceptions import ProviderCommunicationError

logger = structlog.get_logger(__name__)

_partner_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


def extract_error_message(body: Any) -> str | None:
    """Pull a human-readable error out of a partner error body.

    Partners nest it differently: {"response": {"Message": ...}},
    {"message": ...}, {"detail": ...}, or a bare string.
    """
    if isinstance(body, str):
        return body.strip() or None
    if not isinstance(body, dict):
        return None
    nested = body.get("response")
    if isinstance(nested, dict) and nested.get("Message"):
        return str(nested["Message"])
    for key in ("message", "Message", "detail", "error"):
        value = body.get(key)
        if value:
            return value if isinstance(value, str) else str(value)
    return None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class PartnerClient:
    """Base for async partner API clients.

    Args:
        base_url: Partner API root, without trailing slash.
        headers: Headers sent on every request.
        timeout: Default per-request timeout in seconds.
        verify: TLS verification flag passed to httpx.
    """

    PROVIDER = "partner"

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        verify: bool = True,
        auth: httpx.Auth | tuple[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = headers or {}
        self._timeout = timeout
        self._verify = verify
        self._auth = auth

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=timeout,
            verify=self._verify,
            auth=self._auth,
        )

    async def _send(
        self, method: str, path: str, *, timeout: float, **kwargs: Any
    ) -> httpx.Response:
        async with self._client(timeout) as client:
            return await client.request(method, f"{self._base_url}{path}", **kwargs)

    @_partner_retry
    async def _send_idempotent(
        self, method: str, path: str, *, timeout: float, **kwargs: Any
    ) -> httpx.Response:
        return await self._send(method, path, timeout=timeout, **kwargs)

    async def _call(
        self,
        method: str,
        path: str,
        *,
        idempotent: bool = False,
        allow_not_found: bool = False,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        """Send a request and return the decoded body.

        Args:
            method: HTTP method.
            path: Path appended to the base URL.
            idempotent: Retry on transport errors when True.
            allow_not_found: Return None on 404 instead of raising.
            timeout: Override the default timeout.

        Returns:
            Decoded JSON body ({} for an empty body), or None for an allowed 404.

        Raises:
            ProviderCommunicationError: On transport failure or non-2xx status.
        """
        send = self._send_idempotent if idempotent else self._send
        try:
            response = await send(
                method, path, timeout=timeout or self._timeout, **kwargs
            )
        except httpx.HTTPError as exc:
            logger.error(
                "partner.transport_error",
                provider=self.PROVIDER,
                path=path,
                error=str(exc),
            )
            raise ProviderCommunicationError(
                f"{self.PROVIDER} request {path} failed: {exc}",
                provider=self.PROVIDER,
            ) from exc

        if allow_not_found and response.status_code == 404:
            logger.warning("partner.not_found", provider=self.PROVIDER, path=path)
            return None

        if response.is_error:
            body = _response_body(response)
            provider_message = extract_error_message(body)
            logger.error(
                "partner.http_error",
                provider=self.PROVIDER,
                path=path,
                status_code=response.status_code,
                provider_message=provider_message,
            )
            raise ProviderCommunicationError(
                f"{self.PROVIDER} request {path} returned HTTP {response.status_code}",
                provider=self.PROVIDER,
                status_code=response.status_code,
                provider_message=provider_message,
            )

        if not response.content:
            return {}
        return _response_body(response)
