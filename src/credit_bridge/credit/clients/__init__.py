"""HTTP clients for the credit provider APIs.

Each client is a thin httpx wrapper returning decoded partner bodies.
Status vocabulary and payload shape live in the provider adapters.
"""

from src.credit_bridge.credit.clients.base import PartnerClient, extract_error_message
from src.credit_bridge.credit.clients.easycredit import EasyCreditClient
from src.credit_bridge.credit.clients.iute import IuteClient
from src.credit_bridge.credit.clients.microinvest import MicroinvestClient

__all__ = [
    "EasyCreditClient",
    "IuteClient",
    "MicroinvestClient",
    "PartnerClient",
    "extract_error_message",
]
