"""
Credit Ledger Service Component Test Fixtures

Provides mocks for credit ledger component testing:
- MockLedgerRepository: In-memory LedgerRepositoryProtocol with real unit-of-work
  semantics (serialized, rolled back on exception)
- MockLedgerUnitOfWork: Conditional mutations mirroring the SQL in credit_repository.py
- MockTenantDirectory: Tenant directory stand-in
- MockPaymentClient: Payment confirmation stand-in
- FakeClock: Injectable clock the tests can move forward
"""

import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from core.config.ledger_config import LedgerPolicyConfig
from microservices.credit_ledger_service.credit_ledger_service import CreditLedgerService
from microservices.credit_ledger_service.protocols import ExternalDependencyError
from tests.contracts.credit_ledger.data_contract import CreditLedgerTestDataFactory


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Callable clock; starts at the real current time"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# Mock Unit of Work
# =============================================================================


class MockLedgerUnitOfWork:
    """Mutations against the repository's in-memory tables"""

    def __init__(self, repo: "MockLedgerRepository"):
        self.repo = repo

    def _account(self, tenant_id: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return self.repo.accounts.get((tenant_id, entity_id))

    async def ensure_account(self, tenant_id: str, entity_id: str) -> Dict[str, Any]:
        self.repo.method_calls.append(("ensure_account", tenant_id, entity_id))
        account = self._account(tenant_id, entity_id)
        if account is None:
            now = datetime.now(timezone.utc)
            account = {
                "tenant_id": tenant_id,
                "entity_id": entity_id,
                "available_credits": 0,
                "reserved_credits": 0,
                "free_credits": 0,
                "free_credits_expires_at": None,
                "is_active": True,
                "created_at": now,
                "last_updated_at": now,
            }
            self.repo.accounts[(tenant_id, entity_id)] = account
        return copy.deepcopy(account)

    async def debit_account(self, tenant_id: str, entity_id: str, amount: int) -> Optional[Dict[str, Any]]:
        self.repo.method_calls.append(("debit_account", tenant_id, entity_id, amount))
        await asyncio.sleep(0)
        account = self._account(tenant_id, entity_id)
        if not account or not account["is_active"] or account["available_credits"] < amount:
            return None
        previous = account["available_credits"]
        account["available_credits"] = previous - amount
        account["free_credits"] = max(account["free_credits"] - amount, 0)
        account["last_updated_at"] = datetime.now(timezone.utc)
        return {"previous_balance": previous, "new_balance": account["available_credits"]}

    async def credit_account(
        self,
        tenant_id: str,
        entity_id: str,
        amount: int,
        free_credits: int = 0,
        free_credits_expires_at: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        self.repo.method_calls.append(("credit_account", tenant_id, entity_id, amount))
        if (tenant_id, entity_id) in self.repo.fail_credit_for:
            raise RuntimeError(f"storage unavailable for {tenant_id}/{entity_id}")
        account = self._account(tenant_id, entity_id)
        if not account or not account["is_active"]:
            return None
        previous = account["available_credits"]
        account["available_credits"] = previous + amount
        account["free_credits"] += free_credits
        if free_credits > 0 and free_credits_expires_at is not None:
            current = account["free_credits_expires_at"]
            account["free_credits_expires_at"] = max(current or free_credits_expires_at, free_credits_expires_at)
        account["last_updated_at"] = datetime.now(timezone.utc)
        return {"previous_balance": previous, "new_balance": account["available_credits"]}

    async def sweep_free_credits(
        self, tenant_id: str, entity_id: str, now: datetime, force: bool = False
    ) -> Optional[Dict[str, Any]]:
        account = self._account(tenant_id, entity_id)
        if not account or account["free_credits"] <= 0:
            return None
        expires_at = account["free_credits_expires_at"]
        if not force and (expires_at is None or expires_at > now):
            return None
        swept = account["free_credits"]
        previous = account["available_credits"]
        account["available_credits"] = previous - swept
        account["free_credits"] = 0
        account["free_credits_expires_at"] = None
        account["last_updated_at"] = now
        return {"previous_balance": previous, "new_balance": account["available_credits"], "swept": swept}

    async def insert_transaction(self, txn_data: Dict[str, Any]) -> Dict[str, Any]:
        self.repo.method_calls.append(("insert_transaction", txn_data.get("transaction_type")))
        if txn_data.get("transaction_type") in self.repo.fail_insert_types:
            raise RuntimeError(f"ledger insert failed for {txn_data.get('transaction_type')}")
        row = copy.deepcopy(txn_data)
        row.setdefault("transaction_id", CreditLedgerTestDataFactory.make_payment_reference())
        row.setdefault("created_at", datetime.now(timezone.utc))
        self.repo.transactions.append(row)
        return copy.deepcopy(row)

    async def claim_idempotency_key(self, idempotency_key: str, tenant_id: str, entity_id: str) -> bool:
        if idempotency_key in self.repo.idempotency_keys:
            return False
        self.repo.idempotency_keys[idempotency_key] = {
            "idempotency_key": idempotency_key,
            "tenant_id": tenant_id,
            "entity_id": entity_id,
            "transaction_id": None,
            "created_at": datetime.now(timezone.utc),
        }
        return True

    async def attach_idempotency_transaction(self, idempotency_key: str, transaction_id: str) -> None:
        self.repo.idempotency_keys[idempotency_key]["transaction_id"] = transaction_id

    async def upsert_allocation(self, alloc_data: Dict[str, Any]) -> Dict[str, Any]:
        self.repo.method_calls.append(("upsert_allocation", alloc_data["target_application"]))
        if alloc_data["target_application"] in self.repo.fail_upsert_for_applications:
            raise RuntimeError(f"allocation table rejected {alloc_data['target_application']}")

        now = datetime.now(timezone.utc)
        amount = alloc_data["allocated_credits"]
        scope = (
            alloc_data["tenant_id"],
            alloc_data["source_entity_id"],
            alloc_data["target_application"],
            alloc_data["credit_type"],
            alloc_data.get("campaign_id") or "",
        )
        for allocation in self.repo.allocations.values():
            if allocation["is_active"] and self.repo.scope_of(allocation) == scope:
                allocation["allocated_credits"] += amount
                allocation["available_credits"] += amount
                if allocation["expires_at"] is None or alloc_data.get("expires_at") is None:
                    allocation["expires_at"] = None
                else:
                    allocation["expires_at"] = max(allocation["expires_at"], alloc_data["expires_at"])
                allocation["auto_replenish"] = allocation["auto_replenish"] or alloc_data.get("auto_replenish", False)
                allocation["purpose"] = alloc_data.get("purpose") or allocation["purpose"]
                allocation["metadata"] = {**allocation["metadata"], **(alloc_data.get("metadata") or {})}
                allocation["updated_at"] = now
                return {**copy.deepcopy(allocation), "created": False}

        allocation_id = f"cred_alloc_{uuid.uuid4().hex[:20]}"
        allocation = {
            "allocation_id": allocation_id,
            "tenant_id": alloc_data["tenant_id"],
            "source_entity_id": alloc_data["source_entity_id"],
            "target_application": alloc_data["target_application"],
            "credit_type": alloc_data["credit_type"],
            "allocated_credits": amount,
            "used_credits": 0,
            "available_credits": amount,
            "campaign_id": alloc_data.get("campaign_id"),
            "purpose": alloc_data.get("purpose"),
            "expires_at": alloc_data.get("expires_at"),
            "expired_at": None,
            "auto_replenish": alloc_data.get("auto_replenish", False),
            "is_active": True,
            "metadata": copy.deepcopy(alloc_data.get("metadata") or {}),
            "created_at": now,
            "updated_at": now,
        }
        self.repo.allocations[allocation_id] = allocation
        return {**copy.deepcopy(allocation), "created": True}

    async def consume_allocation(self, allocation_id: str, amount: int, now: datetime) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        allocation = self.repo.allocations.get(allocation_id)
        if (
            not allocation
            or not allocation["is_active"]
            or allocation["available_credits"] < amount
            or (allocation["expires_at"] is not None and allocation["expires_at"] <= now)
        ):
            return None
        previous = allocation["available_credits"]
        allocation["available_credits"] = previous - amount
        allocation["used_credits"] += amount
        if allocation_id in self.repo.corrupt_allocation_ids:
            allocation["used_credits"] += 1
        allocation["updated_at"] = now
        return {**copy.deepcopy(allocation), "previous_available": previous}

    async def expire_stale_allocation(self, scope: Dict[str, Any], now: datetime) -> Optional[Dict[str, Any]]:
        key = self.repo.scope_of(scope)
        for allocation_id, allocation in self.repo.allocations.items():
            if allocation["is_active"] and self.repo.scope_of(allocation) == key:
                return await self.expire_allocation(allocation_id, now)
        return None

    async def expire_allocation(self, allocation_id: str, now: datetime, force: bool = False) -> Optional[Dict[str, Any]]:
        allocation = self.repo.allocations.get(allocation_id)
        if not allocation or not allocation["is_active"]:
            return None
        expires_at = allocation["expires_at"]
        if not force and (expires_at is None or expires_at > now):
            return None
        previous = allocation["available_credits"]
        allocation["available_credits"] = 0
        allocation["is_active"] = False
        allocation["expired_at"] = now
        allocation["updated_at"] = now
        return {**copy.deepcopy(allocation), "previous_available": previous}


# =============================================================================
# Mock Repository Implementation
# =============================================================================


class MockLedgerRepository:
    """
    Mock implementation of LedgerRepositoryProtocol for testing.

    Units of work are serialized with a lock and restore a snapshot of the
    mutable tables when the block raises, like a rolled-back transaction.
    """

    def __init__(self):
        self.accounts: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.transactions: List[Dict[str, Any]] = []
        self.allocations: Dict[str, Dict[str, Any]] = {}
        self.campaigns: Dict[str, Dict[str, Any]] = {}
        self.idempotency_keys: Dict[str, Dict[str, Any]] = {}
        self.flags: List[Dict[str, Any]] = []
        self.operation_costs: Dict[Tuple[str, str], Dict[str, Any]] = {}

        # Failure injection
        self.fail_credit_for: Set[Tuple[str, str]] = set()
        self.fail_upsert_for_applications: Set[str] = set()
        self.fail_insert_types: Set[str] = set()
        self.corrupt_allocation_ids: Set[str] = set()

        # Track method calls for verification
        self.method_calls: List[Tuple] = []
        self.committed_units = 0
        self.rolled_back_units = 0
        self._lock: Optional[asyncio.Lock] = None
        self.initialized = False
        self.closed = False

    async def initialize(self, apply_migrations: bool = False):
        self.initialized = True

    async def close(self):
        self.closed = True

    @staticmethod
    def scope_of(allocation: Dict[str, Any]) -> Tuple:
        return (
            allocation["tenant_id"],
            allocation["source_entity_id"],
            allocation["target_application"],
            allocation["credit_type"],
            allocation.get("campaign_id") or "",
        )

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy({
            "accounts": self.accounts,
            "transactions": self.transactions,
            "allocations": self.allocations,
            "idempotency_keys": self.idempotency_keys,
        })

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.accounts = snapshot["accounts"]
        self.transactions = snapshot["transactions"]
        self.allocations = snapshot["allocations"]
        self.idempotency_keys = snapshot["idempotency_keys"]

    @asynccontextmanager
    async def transaction(self):
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            snapshot = self._snapshot()
            try:
                yield MockLedgerUnitOfWork(self)
            except BaseException:
                self._restore(snapshot)
                self.rolled_back_units += 1
                raise
            self.committed_units += 1

    # ====================
    # Accounts
    # ====================

    async def get_account(self, tenant_id: str, entity_id: str) -> Optional[Dict[str, Any]]:
        account = self.accounts.get((tenant_id, entity_id))
        return copy.deepcopy(account) if account else None

    async def set_account_active(self, tenant_id: str, entity_id: str, is_active: bool) -> Optional[Dict[str, Any]]:
        account = self.accounts.get((tenant_id, entity_id))
        if not account:
            return None
        account["is_active"] = is_active
        account["last_updated_at"] = datetime.now(timezone.utc)
        return copy.deepcopy(account)

    async def list_expired_free_credit_accounts(self, now: datetime) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(a) for a in self.accounts.values()
            if a["free_credits"] > 0 and a["free_credits_expires_at"] is not None
            and a["free_credits_expires_at"] <= now
        ]

    async def list_free_credit_accounts(self, tenant_id: str) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(a) for a in self.accounts.values()
            if a["tenant_id"] == tenant_id and a["free_credits"] > 0
        ]

    # ====================
    # Ledger
    # ====================

    async def get_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        for txn in self.transactions:
            if txn["transaction_id"] == transaction_id:
                return copy.deepcopy(txn)
        return None

    async def list_transactions(self, tenant_id: str, entity_id: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = []
        for txn in reversed(self.transactions):
            if txn["tenant_id"] != tenant_id or txn["entity_id"] != entity_id:
                continue
            if filters.get("transaction_type") and txn["transaction_type"] != filters["transaction_type"]:
                continue
            if filters.get("start_date") and txn["created_at"] < filters["start_date"]:
                continue
            if filters.get("end_date") and txn["created_at"] > filters["end_date"]:
                continue
            if filters.get("ledger_scope") and txn["ledger_scope"] != filters["ledger_scope"]:
                continue
            rows.append(copy.deepcopy(txn))
        offset = filters.get("offset", 0)
        return rows[offset:offset + filters.get("limit", 50)]

    async def sum_ledger_amounts(
        self,
        tenant_id: str,
        entity_id: str,
        ledger_scope: str = "account",
        allocation_id: Optional[str] = None,
    ) -> int:
        if allocation_id:
            return sum(
                t["amount"] for t in self.transactions
                if t.get("allocation_id") == allocation_id and t["ledger_scope"] == ledger_scope
            )
        return sum(
            t["amount"] for t in self.transactions
            if t["tenant_id"] == tenant_id and t["entity_id"] == entity_id and t["ledger_scope"] == ledger_scope
        )

    async def get_idempotency_record(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        record = self.idempotency_keys.get(idempotency_key)
        return copy.deepcopy(record) if record else None

    # ====================
    # Allocations
    # ====================

    async def get_allocation(self, allocation_id: str) -> Optional[Dict[str, Any]]:
        allocation = self.allocations.get(allocation_id)
        return copy.deepcopy(allocation) if allocation else None

    async def list_active_allocations(self, tenant_id: str, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(a) for a in self.allocations.values()
            if a["tenant_id"] == tenant_id and a["is_active"]
            and (entity_id is None or a["source_entity_id"] == entity_id)
        ]

    async def list_expired_allocations(
        self, now: datetime, credit_types: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(a) for a in self.allocations.values()
            if a["is_active"] and a["expires_at"] is not None and a["expires_at"] <= now
            and (not credit_types or a["credit_type"] in credit_types)
        ]

    async def list_expiring_allocations(
        self,
        start: datetime,
        end: datetime,
        tenant_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(a) for a in self.allocations.values()
            if a["is_active"] and a["expires_at"] is not None and start < a["expires_at"] <= end
            and (tenant_id is None or a["tenant_id"] == tenant_id)
            and (entity_id is None or a["source_entity_id"] == entity_id)
        ]

    async def extend_allocations(self, campaign_id: str, delta: timedelta, tenant_id: Optional[str] = None) -> int:
        extended = 0
        for allocation in self.allocations.values():
            if (
                allocation["campaign_id"] == campaign_id
                and allocation["is_active"]
                and allocation["expires_at"] is not None
                and (tenant_id is None or allocation["tenant_id"] == tenant_id)
            ):
                allocation["expires_at"] = allocation["expires_at"] + delta
                extended += 1
        return extended

    async def list_campaign_allocations(self, campaign_id: str, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(a) for a in self.allocations.values()
            if a["campaign_id"] == campaign_id and (tenant_id is None or a["tenant_id"] == tenant_id)
        ]

    # ====================
    # Campaigns
    # ====================

    async def create_campaign(self, campaign_data: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        campaign = copy.deepcopy(campaign_data)
        campaign.setdefault("campaign_id", f"camp_{uuid.uuid4().hex[:20]}")
        campaign.setdefault("status", "draft")
        campaign.setdefault("metadata", {})
        campaign.update({
            "distributed_count": 0,
            "failed_count": 0,
            "distributed_at": None,
            "created_at": now,
            "updated_at": now,
        })
        self.campaigns[campaign["campaign_id"]] = campaign
        return copy.deepcopy(campaign)

    async def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        campaign = self.campaigns.get(campaign_id)
        return copy.deepcopy(campaign) if campaign else None

    async def transition_campaign_status(
        self,
        campaign_id: str,
        from_statuses: List[str],
        to_status: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        campaign = self.campaigns.get(campaign_id)
        if not campaign or campaign["status"] not in from_statuses:
            return None
        campaign["status"] = to_status
        campaign.update(copy.deepcopy(updates or {}))
        campaign["updated_at"] = datetime.now(timezone.utc)
        return copy.deepcopy(campaign)

    async def update_campaign(self, campaign_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        campaign = self.campaigns.get(campaign_id)
        if not campaign:
            return None
        campaign.update(copy.deepcopy(updates))
        campaign["updated_at"] = datetime.now(timezone.utc)
        return copy.deepcopy(campaign)

    async def list_campaigns(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(c) for c in reversed(list(self.campaigns.values()))
            if status is None or c["status"] == status
        ]

    async def list_campaigns_ready_to_expire(self, now: datetime) -> List[Dict[str, Any]]:
        ready = []
        for campaign in self.campaigns.values():
            if campaign["status"] != "distributed" or campaign.get("expires_at") is None:
                continue
            if campaign["expires_at"] > now:
                continue
            if any(a["campaign_id"] == campaign["campaign_id"] and a["is_active"] for a in self.allocations.values()):
                continue
            ready.append(copy.deepcopy(campaign))
        return ready

    # ====================
    # Operation Costs
    # ====================

    async def get_operation_cost(self, operation_code: str, tenant_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        self.method_calls.append(("get_operation_cost", operation_code, tenant_id))
        for key in ((operation_code, tenant_id or ""), (operation_code, "")):
            row = self.operation_costs.get(key)
            if row and row["is_active"]:
                return copy.deepcopy(row)
        return None

    async def upsert_operation_cost(self, cost_data: Dict[str, Any]) -> Dict[str, Any]:
        key = (cost_data["operation_code"], cost_data.get("tenant_id") or "")
        row = self.operation_costs.setdefault(key, {"created_at": datetime.now(timezone.utc)})
        row.update({
            "operation_code": cost_data["operation_code"],
            "tenant_id": cost_data.get("tenant_id"),
            "credit_cost": cost_data["credit_cost"],
            "unit": cost_data.get("unit", "operation"),
            "is_active": True,
            "updated_at": datetime.now(timezone.utc),
        })
        return copy.deepcopy(row)

    # ====================
    # Reconciliation
    # ====================

    async def create_reconciliation_flag(
        self, record_type: str, record_id: str, reason: str, details: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        flag = {
            "flag_id": f"recon_{uuid.uuid4().hex[:20]}",
            "record_type": record_type,
            "record_id": record_id,
            "reason": reason,
            "details": copy.deepcopy(details or {}),
        }
        self.flags.append(flag)
        return copy.deepcopy(flag)

    # Test helpers

    def ledger_rows(self, tenant_id: str, entity_id: str, scope: str = "account") -> List[Dict[str, Any]]:
        return [
            t for t in self.transactions
            if t["tenant_id"] == tenant_id and t["entity_id"] == entity_id and t["ledger_scope"] == scope
        ]

    def allocation_rows(self, allocation_id: str) -> List[Dict[str, Any]]:
        return [t for t in self.transactions if t.get("allocation_id") == allocation_id and t["ledger_scope"] == "allocation"]


# =============================================================================
# Mock Service Clients
# =============================================================================


class MockTenantDirectory:
    """Mock tenant directory"""

    def __init__(self):
        self.primary_entities: Dict[str, Optional[str]] = {}
        self.inactive: Set[str] = set()
        self.unavailable = False

    def add_tenant(self, tenant_id: str, entity_id: Optional[str] = None) -> str:
        entity_id = entity_id or f"org_{tenant_id}"
        self.primary_entities[tenant_id] = entity_id
        return entity_id

    def add_tenant_without_org(self, tenant_id: str) -> None:
        self.primary_entities[tenant_id] = None

    async def list_active_tenants(self) -> List[str]:
        if self.unavailable:
            raise ExternalDependencyError("tenant_service unreachable", service="tenant_service")
        return [t for t in self.primary_entities if t not in self.inactive]

    async def get_primary_entity(self, tenant_id: str) -> Optional[str]:
        if self.unavailable:
            raise ExternalDependencyError("tenant_service unreachable", service="tenant_service")
        return self.primary_entities.get(tenant_id)


class MockPaymentClient:
    """Mock payment confirmation"""

    def __init__(self):
        self.payments: Dict[str, Tuple[str, int]] = {}
        self.unavailable = False
        self.calls: List[str] = []

    def add_payment(self, payment_reference: str, tenant_id: str, amount: int) -> None:
        self.payments[payment_reference] = (tenant_id, amount)

    async def confirm_payment(self, payment_reference: str, tenant_id: str, amount: int) -> bool:
        self.calls.append(payment_reference)
        if self.unavailable:
            raise ExternalDependencyError("payment_service unavailable", service="payment_service")
        return self.payments.get(payment_reference) == (tenant_id, amount)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return LedgerPolicyConfig(
        low_balance_threshold=100,
        critical_balance_threshold=10,
        expiry_warning_days=7,
        free_credit_warning_days=30,
    )


@pytest.fixture
def mock_repository():
    return MockLedgerRepository()


@pytest.fixture
def tenant_directory():
    return MockTenantDirectory()


@pytest.fixture
def payment_client():
    return MockPaymentClient()


@pytest.fixture
def ledger_service(mock_repository, mock_event_bus, tenant_directory, policy, clock):
    """CreditLedgerService wired to in-memory storage, without payment confirmation"""
    return CreditLedgerService(
        repository=mock_repository,
        event_bus=mock_event_bus,
        tenant_directory=tenant_directory,
        policy=policy,
        clock=clock,
    )


@pytest.fixture
def confirmed_payment_service(mock_repository, mock_event_bus, tenant_directory, payment_client, policy, clock):
    """CreditLedgerService that confirms payments before crediting"""
    return CreditLedgerService(
        repository=mock_repository,
        event_bus=mock_event_bus,
        tenant_directory=tenant_directory,
        payment_client=payment_client,
        policy=policy,
        clock=clock,
    )


@pytest.fixture
def data_factory():
    return CreditLedgerTestDataFactory


@pytest.fixture
def account(data_factory):
    """A fresh (tenant_id, entity_id) pair"""
    return data_factory.make_tenant_id(), data_factory.make_entity_id()


@pytest.fixture
def fund(ledger_service):
    """Credit an account through the manual source"""

    async def _fund(tenant_id: str, entity_id: str, amount: int, **kwargs):
        result = await ledger_service.add_credits(tenant_id, entity_id, amount, source="manual", **kwargs)
        assert result.ok, result.message
        return result

    return _fund
