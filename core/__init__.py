#!/usr/bin/env python3
"""
Core Module for the Credit Ledger

Shared infrastructure used by microservices/credit_ledger_service.

COMPONENTS:
    - config/: Environment-driven configuration (infra, peer services, logging, ledger policy)
    - logger.py: Service logger setup
    - cache.py: TTL cache injected into HTTP clients
    - nats_client.py: NATS JetStream event bus
    - postgres_client.py: asyncpg pool wrapper

USAGE:
    from core.config import get_settings
    from core.nats_client import get_event_bus

    settings = get_settings()
    event_bus = await get_event_bus("credit_ledger_service")
"""

__version__ = "2.1.0"
