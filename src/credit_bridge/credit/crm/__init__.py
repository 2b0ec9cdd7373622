"""CRM integration -- order reads, linkage writes, files, and change history.

Exports:
    CRMClient: Abstract interface the credit flow depends on.
    SimlaClient: Simla API v5 implementation.
    CrmFieldMap: Custom field codes used on orders.
"""

from src.credit_bridge.credit.crm.adapter import CRMClient
from src.credit_bridge.credit.crm.simla import CrmFieldMap, SimlaClient, is_contract_file

__all__ = [
    "CRMClient",
    "CrmFieldMap",
    "SimlaClient",
    "is_contract_file",
]
