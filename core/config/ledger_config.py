#!/usr/bin/env python3
"""Credit ledger main configuration

Combines the infrastructure, peer service and logging sub-configs with
the ledger's own policy settings (balance alert thresholds, expiry
warning window, default operation price, database schema).
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .service_config import ServiceConfig


def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


# ===========================================
# Ledger Policy
# ===========================================

@dataclass
class LedgerPolicyConfig:
    """Balance alerting, expiry and operation pricing settings"""
    low_balance_threshold: int = 100
    critical_balance_threshold: int = 10
    expiry_warning_days: int = 7
    free_credit_warning_days: int = 30
    default_operation_cost: int = 1
    operation_cost_cache_ttl_seconds: int = 300

    @classmethod
    def from_env(cls) -> 'LedgerPolicyConfig':
        return cls(
            low_balance_threshold=_int(os.getenv("CREDIT_LOW_BALANCE_THRESHOLD", "100"), 100),
            critical_balance_threshold=_int(os.getenv("CREDIT_CRITICAL_BALANCE_THRESHOLD", "10"), 10),
            expiry_warning_days=_int(os.getenv("CREDIT_EXPIRY_WARNING_DAYS", "7"), 7),
            free_credit_warning_days=_int(os.getenv("CREDIT_FREE_WARNING_DAYS", "30"), 30),
            default_operation_cost=_int(os.getenv("CREDIT_DEFAULT_OPERATION_COST", "1"), 1),
            operation_cost_cache_ttl_seconds=_int(os.getenv("CREDIT_OPERATION_COST_CACHE_TTL", "300"), 300),
        )


# ===========================================
# Main Credit Ledger Configuration
# ===========================================

@dataclass
class CreditLedgerConfig:
    """Credit ledger service configuration with all sub-configs"""

    environment: str = "development"
    service_name: str = "credit_ledger_service"
    db_schema: str = "credit_ledger"

    # Sub-configurations
    policy: LedgerPolicyConfig = field(default_factory=LedgerPolicyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)

    @classmethod
    def from_env(cls) -> 'CreditLedgerConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            service_name=os.getenv("SERVICE_NAME", "credit_ledger_service"),
            db_schema=os.getenv("CREDIT_LEDGER_SCHEMA", "credit_ledger"),
            policy=LedgerPolicyConfig.from_env(),
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            services=ServiceConfig.from_env(),
        )
