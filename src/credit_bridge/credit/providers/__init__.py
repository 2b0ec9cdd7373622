"""Credit provider adapters.

One ProviderAdapter per ProviderId; the registry is built once at
startup and shared by the orchestrator and reconciliation engine.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from src.credit_bridge.core.exceptions import ValidationError
from src.credit_bridge.credit.providers.base import UNMAPPED, ProviderAdapter, StatusTable
from src.credit_bridge.credit.providers.easycredit import EASYCREDIT_STATUS_TABLE, EasyCreditAdapter
from src.credit_bridge.credit.providers.iute import IUTE_STATUS_TABLE, IuteAdapter
from src.credit_bridge.credit.providers.microinvest import (
    MICROINVEST_STATUS_TABLE,
    MicroinvestAdapter,
)
from src.credit_bridge.credit.schemas import PROVIDER_ALIASES, ProviderId

DEFAULT_PROVIDER = ProviderId.MICROINVEST


def resolve_provider_id(credit_company: str | list | None) -> ProviderId:
    """Resolve the CRM credit-company selector to a ProviderId.

    Empty selects the default provider; a list-valued selector uses its
    first element.

    Raises:
        ValidationError: If the value names no supported provider.
    """
    value = credit_company
    if isinstance(value, list):
        value = value[0] if value else None
    if not value:
        return DEFAULT_PROVIDER
    key = str(value).strip().lower()
    if key in PROVIDER_ALIASES:
        return PROVIDER_ALIASES[key]
    try:
        return ProviderId(key)
    except ValueError:
        raise ValidationError(f"Unknown credit company: {value}") from None


class ProviderRegistry:
    """Lookup of adapters by provider id."""

    def __init__(self, adapters: Iterable[ProviderAdapter]) -> None:
        self._adapters: Mapping[ProviderId, ProviderAdapter] = {
            a.provider_id: a for a in adapters
        }

    def get(self, provider_id: ProviderId) -> ProviderAdapter:
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            raise ValidationError(f"Credit company {provider_id.value} is not configured")
        return adapter

    def for_company(self, credit_company: str | list | None) -> ProviderAdapter:
        return self.get(resolve_provider_id(credit_company))

    def __iter__(self):
        return iter(self._adapters.values())


__all__ = [
    "DEFAULT_PROVIDER",
    "EASYCREDIT_STATUS_TABLE",
    "IUTE_STATUS_TABLE",
    "MICROINVEST_STATUS_TABLE",
    "UNMAPPED",
    "EasyCreditAdapter",
    "IuteAdapter",
    "MicroinvestAdapter",
    "ProviderAdapter",
    "ProviderRegistry",
    "StatusTable",
    "resolve_provider_id",
]
