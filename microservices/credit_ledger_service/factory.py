"""
Credit Ledger Service Factory

Factory for creating CreditLedgerService with real dependencies.
This is the ONLY module that imports concrete implementations.
"""

import logging
from typing import Optional

from core.cache import TTLCache
from core.config.ledger_config import CreditLedgerConfig

from .credit_ledger_service import CreditLedgerService
from .credit_repository import CreditLedgerRepository

logger = logging.getLogger(__name__)


def create_credit_ledger_service(
    config: Optional[CreditLedgerConfig] = None,
    event_bus=None,
    tenant_directory=None,
    payment_client=None,
    repository=None,
) -> CreditLedgerService:
    """
    Create CreditLedgerService with all real dependencies

    Args:
        config: Optional ledger config (loaded from environment if not provided)
        event_bus: Optional event bus for event publishing
        tenant_directory: Optional tenant directory (creates default if not provided)
        payment_client: Optional payment confirmation client (created when enabled in config)
        repository: Optional repository (creates the PostgreSQL one if not provided)

    Returns:
        CreditLedgerService instance; call repository.initialize() before use
    """
    if config is None:
        config = CreditLedgerConfig.from_env()

    if repository is None:
        repository = CreditLedgerRepository(config=config)

    if tenant_directory is None:
        try:
            from .clients.tenant_directory_client import TenantDirectoryClient

            tenant_directory = TenantDirectoryClient(
                cache=TTLCache(ttl_seconds=config.services.tenant_cache_ttl_seconds),
                config=config.services,
            )
            logger.info("✅ TenantDirectoryClient initialized for credit ledger service")
        except Exception as e:
            logger.warning(f"⚠️ Failed to initialize TenantDirectoryClient: {e}")
            logger.warning("Credit ledger service will operate without tenant directory (campaigns disabled)")

    if payment_client is None and config.services.payment_confirmation_enabled:
        try:
            from .clients.payment_client import PaymentConfirmationClient

            payment_client = PaymentConfirmationClient(config=config.services)
            logger.info("✅ PaymentConfirmationClient initialized for credit ledger service")
        except Exception as e:
            logger.warning(f"⚠️ Failed to initialize PaymentConfirmationClient: {e}")
            logger.warning("Credit ledger service will add payment credits without confirmation")

    if event_bus is None:
        logger.warning("⚠️ No event bus provided; credit ledger events will not be published")

    return CreditLedgerService(
        repository=repository,
        event_bus=event_bus,
        tenant_directory=tenant_directory,
        payment_client=payment_client,
        policy=config.policy,
    )


__all__ = ["create_credit_ledger_service"]
