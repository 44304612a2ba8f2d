"""
Credit Ledger Service Runtime

Process entry point. Wires logging, the NATS event bus and the ledger
service, and runs one maintenance pass (expiry sweep plus expiry warnings)
for an external scheduler to invoke:

    python -m microservices.credit_ledger_service.main
"""

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))
from core.config.ledger_config import CreditLedgerConfig
from core.logger import setup_service_logger
from core.nats_client import get_event_bus

from .credit_ledger_service import CreditLedgerService
from .factory import create_credit_ledger_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def service_lifespan(
    config: Optional[CreditLedgerConfig] = None,
    event_bus=None,
    **collaborators,
) -> AsyncIterator[CreditLedgerService]:
    """
    Start the ledger service and tear it down on exit

    Args:
        config: Optional ledger config (loaded from environment if not provided)
        event_bus: Optional event bus; connected from config when NATS is enabled
        **collaborators: Passed through to create_credit_ledger_service
    """
    if config is None:
        config = CreditLedgerConfig.from_env()

    setup_service_logger(config.service_name, config=config.logging)

    owns_event_bus = False
    if event_bus is None and config.infrastructure.nats_enabled:
        try:
            event_bus = await get_event_bus(config.service_name, config=config.infrastructure)
            owns_event_bus = True
            logger.info("✅ Event bus initialized successfully")
        except Exception as e:
            logger.warning(f"⚠️  Failed to initialize event bus: {e}. Continuing without event publishing.")
            event_bus = None

    service = create_credit_ledger_service(config=config, event_bus=event_bus, **collaborators)
    await service.repository.initialize()
    logger.info(f"✅ {config.service_name} started ({config.environment})")

    try:
        yield service
    finally:
        await service.repository.close()
        for client in (service.tenant_directory, service.payment_client):
            if client is not None and hasattr(client, "close"):
                await client.close()
        if owns_event_bus:
            await event_bus.close()
        logger.info(f"{config.service_name} stopped")


async def run_maintenance(service: CreditLedgerService) -> Dict[str, int]:
    """Sweep expired credits, then warn about credits expiring soon"""
    report = await service.process_expiries()
    if report.failures:
        logger.warning(f"Expiry sweep finished with {len(report.failures)} failed items")
    warned = await service.warn_expiring()
    return {
        "processed": report.processed_count,
        "swept_credits": report.swept_credits,
        "failed": len(report.failures),
        "campaigns_expired": len(report.campaigns_expired),
        "warned": warned,
    }


async def main() -> int:
    async with service_lifespan() as service:
        summary = await run_maintenance(service)
    logger.info(f"Maintenance pass complete: {summary}")
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
