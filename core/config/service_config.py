#!/usr/bin/env python3
"""Service configuration for peer services

HTTP collaborators the credit ledger calls: the tenant directory
(active tenants, primary entities) and the payment service
(payment confirmation lookups).
"""
import os
from dataclasses import dataclass

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class ServiceConfig:
    """Peer service endpoints"""

    # ===========================================
    # Tenant directory
    # ===========================================
    tenant_service_url: str = "http://localhost:8210"
    tenant_cache_ttl_seconds: int = 300

    # ===========================================
    # Payment confirmation
    # ===========================================
    payment_service_url: str = "http://localhost:8207"
    payment_confirmation_enabled: bool = False
    payment_retry_attempts: int = 3

    # ===========================================
    # HTTP client
    # ===========================================
    request_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Load service configuration from environment variables"""
        return cls(
            tenant_service_url=os.getenv("TENANT_SERVICE_URL", "http://localhost:8210"),
            tenant_cache_ttl_seconds=_int(os.getenv("TENANT_CACHE_TTL_SECONDS", "300"), 300),
            payment_service_url=os.getenv("PAYMENT_SERVICE_URL", "http://localhost:8207"),
            payment_confirmation_enabled=os.getenv("PAYMENT_CONFIRMATION_ENABLED", "false").lower() == "true",
            payment_retry_attempts=_int(os.getenv("PAYMENT_RETRY_ATTEMPTS", "3"), 3),
            request_timeout=_float(os.getenv("SERVICE_REQUEST_TIMEOUT", "10"), 10.0),
        )
