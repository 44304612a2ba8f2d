"""
Credit Ledger Service Contracts

Test data factory and builders for credit_ledger_service testing.
"""

from .data_contract import (
    CampaignRequestBuilder,
    CreditLedgerTestDataFactory,
)

__all__ = [
    "CampaignRequestBuilder",
    "CreditLedgerTestDataFactory",
]
