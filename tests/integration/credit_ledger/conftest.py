"""
Credit Ledger Integration Test Fixtures

CreditLedgerRepository on a dedicated schema of a real PostgreSQL, and a
CreditLedgerService wired to it with a controllable clock.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio

# Add paths for imports
_current_dir = os.path.dirname(os.path.abspath(__file__))
_project_root = os.path.join(_current_dir, "../../..")
sys.path.insert(0, _project_root)

from core.config.infra_config import InfraConfig
from core.config.ledger_config import CreditLedgerConfig
from microservices.credit_ledger_service.credit_ledger_service import CreditLedgerService
from microservices.credit_ledger_service.credit_repository import CreditLedgerRepository
from tests.component.mocks import MockEventBus
from tests.contracts.credit_ledger.data_contract import CreditLedgerTestDataFactory

INTEGRATION_SCHEMA = os.getenv("CREDIT_LEDGER_TEST_SCHEMA", "credit_ledger_it")


class AdjustableClock:
    """Real time plus an offset the test can move forward"""

    def __init__(self):
        self.offset = timedelta()

    def __call__(self) -> datetime:
        return datetime.now(timezone.utc) + self.offset

    def advance(self, **kwargs) -> None:
        self.offset += timedelta(**kwargs)


class StaticTenantDirectory:
    """Tenant directory backed by a dict of tenant -> primary entity"""

    def __init__(self):
        self.primary_entities: Dict[str, Optional[str]] = {}

    def add_tenant(self, tenant_id: str) -> str:
        entity_id = f"org_{tenant_id}"
        self.primary_entities[tenant_id] = entity_id
        return entity_id

    async def list_active_tenants(self) -> List[str]:
        return sorted(self.primary_entities)

    async def get_primary_entity(self, tenant_id: str) -> Optional[str]:
        return self.primary_entities.get(tenant_id)


@pytest_asyncio.fixture(scope="function")
async def ledger_repository() -> AsyncGenerator[CreditLedgerRepository, None]:
    """
    CreditLedgerRepository on the integration schema

    Applies the bundled migrations; skips the test when PostgreSQL is unreachable.
    """
    config = CreditLedgerConfig(
        environment="testing",
        db_schema=INTEGRATION_SCHEMA,
        infrastructure=InfraConfig.from_env(),
    )
    repository = CreditLedgerRepository(config=config)
    try:
        await repository.initialize(apply_migrations=True)
    except Exception as e:
        await repository.close()
        pytest.skip(f"PostgreSQL not available: {e}")

    yield repository

    await repository.close()


@pytest.fixture
def clock() -> AdjustableClock:
    return AdjustableClock()


@pytest.fixture
def event_bus() -> MockEventBus:
    return MockEventBus()


@pytest.fixture
def tenant_directory() -> StaticTenantDirectory:
    return StaticTenantDirectory()


@pytest.fixture
def ledger_service(ledger_repository, event_bus, tenant_directory, clock) -> CreditLedgerService:
    return CreditLedgerService(
        repository=ledger_repository,
        event_bus=event_bus,
        tenant_directory=tenant_directory,
        clock=clock,
    )


@pytest.fixture(scope="session")
def ledger_factory() -> CreditLedgerTestDataFactory:
    return CreditLedgerTestDataFactory()


@pytest.fixture
def account(ledger_factory):
    """Fresh (tenant, entity) pair; ids are unique so tests never share rows"""
    return ledger_factory.make_tenant_id(), ledger_factory.make_entity_id()