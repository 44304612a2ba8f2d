"""
Credit Ledger Service Client Module

Provides HTTP clients for synchronous communication with other microservices.
"""

from .payment_client import PaymentConfirmationClient
from .tenant_directory_client import TenantDirectoryClient

__all__ = [
    "PaymentConfirmationClient",
    "TenantDirectoryClient",
]
