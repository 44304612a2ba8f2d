"""
Credit Ledger Service - Business Logic Layer

One object exposing every ledger operation. The engines hold the logic;
this class wires them to a shared repository, clock and event bus.

- Balance Store: snapshots, lazy account creation, deactivation
- Transaction Ledger: history and reconciliation
- Consumption / Purchase / Transfer engines
- Operation Cost Resolver: per-tenant operation pricing
- Allocation Engine: application sub-ledger
- Expiry Processor: sweeps, extensions, look-ahead
- Campaign Distribution Engine
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.cache import TTLCache
from core.config.ledger_config import LedgerPolicyConfig

from .allocation import AllocationEngine
from .balance_store import BalanceStore
from .campaign_distribution import CampaignDistributionEngine
from .consumption import ConsumptionEngine
from .expiry import ExpiryProcessor
from .ledger import TransactionLedger
from .operation_costs import OperationCostResolver
from .models import (
    AddCreditsResult,
    AllocationConsumeResult,
    AllocationResult,
    BalanceSnapshot,
    Campaign,
    CampaignDistributionStatus,
    CampaignResult,
    ConsumeResult,
    CreditAccount,
    CreditAllocation,
    CreditTransaction,
    DistributionReport,
    ExpiryReport,
    ExpiryStats,
    ExtendExpiryResult,
    OperationCost,
    OperationCostResult,
    ReconciliationReport,
    TransactionHistoryResult,
    TransferResult,
)
from .protocols import (
    AllocationStrategyProtocol,
    EventBusProtocol,
    LedgerRepositoryProtocol,
    OperationCostResolverProtocol,
    PaymentConfirmationProtocol,
    TenantDirectoryProtocol,
)
from .purchase import PurchaseEngine
from .transfer import TransferEngine

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedgerService:
    """
    Credit Ledger Service - multi-tenant credit ledger and allocation engine
    """

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        event_bus: Optional[EventBusProtocol] = None,
        tenant_directory: Optional[TenantDirectoryProtocol] = None,
        payment_client: Optional[PaymentConfirmationProtocol] = None,
        policy: Optional[LedgerPolicyConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        strategies: Optional[List[AllocationStrategyProtocol]] = None,
        cost_resolver: Optional[OperationCostResolverProtocol] = None,
    ):
        """
        Initialize credit ledger service with dependencies.

        Args:
            repository: Ledger repository for data access
            event_bus: Event bus for publishing events (optional)
            tenant_directory: Tenant directory client (optional, needed for campaigns)
            payment_client: Payment confirmation client (optional)
            policy: Balance thresholds and expiry windows
            clock: Returns the current UTC time (defaults to the system clock)
            strategies: Campaign allocation strategy chain (defaults to application, then primary org)
            cost_resolver: Operation pricing for consume calls without a credit_cost
                (defaults to the repository-backed resolver)
        """
        self.repository = repository
        self.event_bus = event_bus
        self.tenant_directory = tenant_directory
        self.payment_client = payment_client
        self.policy = policy or LedgerPolicyConfig()
        self.clock = clock or _utcnow
        self.cost_resolver = cost_resolver or OperationCostResolver(
            repository,
            cache=TTLCache(ttl_seconds=self.policy.operation_cost_cache_ttl_seconds),
            default_cost=self.policy.default_operation_cost,
        )

        self.balance_store = BalanceStore(repository, policy=self.policy, clock=self.clock)
        self.ledger = TransactionLedger(repository, clock=self.clock)
        self.consumption = ConsumptionEngine(
            repository,
            self.balance_store,
            self.ledger,
            event_bus=event_bus,
            policy=self.policy,
            cost_resolver=self.cost_resolver,
        )
        self.purchase = PurchaseEngine(
            repository, self.balance_store, self.ledger, event_bus=event_bus, payment_client=payment_client
        )
        self.transfers = TransferEngine(
            repository, self.balance_store, self.ledger, self.consumption, event_bus=event_bus
        )
        self.allocations = AllocationEngine(
            repository, self.ledger, self.consumption, event_bus=event_bus, clock=self.clock
        )
        self.expiry = ExpiryProcessor(
            repository, self.balance_store, self.ledger, event_bus=event_bus, policy=self.policy, clock=self.clock
        )
        self.campaigns = CampaignDistributionEngine(
            repository,
            self.purchase,
            self.consumption,
            self.allocations,
            tenant_directory=tenant_directory,
            event_bus=event_bus,
            strategies=strategies,
            clock=self.clock,
        )

    # ====================
    # Balances
    # ====================

    async def get_balance(self, tenant_id: str, entity_id: str) -> BalanceSnapshot:
        return await self.balance_store.get_balance(tenant_id, entity_id)

    async def ensure_account(self, tenant_id: str, entity_id: str) -> CreditAccount:
        return await self.balance_store.ensure_account(tenant_id, entity_id)

    async def deactivate_account(self, tenant_id: str, entity_id: str) -> CreditAccount:
        return await self.balance_store.deactivate_account(tenant_id, entity_id)

    async def consume(
        self,
        tenant_id: str,
        entity_id: str,
        operation_code: str,
        credit_cost: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
    ) -> ConsumeResult:
        return await self.consumption.consume(
            tenant_id, entity_id, operation_code, credit_cost, metadata=metadata, initiated_by=initiated_by
        )

    async def add_credits(
        self,
        tenant_id: str,
        entity_id: str,
        amount: int,
        source: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
        credit_category: str = "paid",
        expires_at: Optional[datetime] = None,
    ) -> AddCreditsResult:
        return await self.purchase.add_credits(
            tenant_id,
            entity_id,
            amount,
            source,
            idempotency_key=idempotency_key,
            metadata=metadata,
            initiated_by=initiated_by,
            credit_category=credit_category,
            expires_at=expires_at,
        )

    async def transfer(
        self,
        tenant_id: str,
        from_entity_id: str,
        to_entity_id: str,
        amount: int,
        initiated_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransferResult:
        return await self.transfers.transfer(
            tenant_id, from_entity_id, to_entity_id, amount, initiated_by=initiated_by, metadata=metadata
        )

    # ====================
    # Operation Pricing
    # ====================

    async def get_operation_cost(self, operation_code: str, tenant_id: Optional[str] = None) -> OperationCost:
        return await self.cost_resolver.resolve(operation_code, tenant_id)

    async def set_operation_cost(
        self,
        operation_code: str,
        credit_cost: int,
        tenant_id: Optional[str] = None,
        unit: str = "operation",
    ) -> OperationCostResult:
        return await self.cost_resolver.set_cost(operation_code, credit_cost, tenant_id=tenant_id, unit=unit)

    # ====================
    # Ledger
    # ====================

    async def get_transaction_history(
        self,
        tenant_id: str,
        entity_id: str,
        transaction_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionHistoryResult:
        return await self.ledger.history(
            tenant_id, entity_id, transaction_type=transaction_type, start=start, end=end, limit=limit, offset=offset
        )

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        return await self.ledger.get_transaction(transaction_id)

    async def reconcile_account(self, tenant_id: str, entity_id: str) -> ReconciliationReport:
        return await self.ledger.reconcile_account(tenant_id, entity_id)

    async def reconcile_allocation(self, allocation_id: str) -> ReconciliationReport:
        return await self.ledger.reconcile_allocation(allocation_id)

    # ====================
    # Allocations
    # ====================

    async def allocate(
        self,
        tenant_id: str,
        source_entity_id: str,
        target_application: str,
        amount: int,
        credit_type: str,
        purpose: Optional[str] = None,
        campaign_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        auto_replenish: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
    ) -> AllocationResult:
        return await self.allocations.allocate(
            tenant_id,
            source_entity_id,
            target_application,
            amount,
            credit_type,
            purpose=purpose,
            campaign_id=campaign_id,
            expires_at=expires_at,
            auto_replenish=auto_replenish,
            metadata=metadata,
            initiated_by=initiated_by,
        )

    async def consume_from_allocation(
        self,
        allocation_id: str,
        amount: int,
        operation_code: str = "allocation.consume",
        initiated_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AllocationConsumeResult:
        return await self.allocations.consume_from_allocation(
            allocation_id, amount, operation_code=operation_code, initiated_by=initiated_by, metadata=metadata
        )

    async def get_allocation(self, allocation_id: str) -> CreditAllocation:
        return await self.allocations.get_allocation(allocation_id)

    async def list_allocations(self, tenant_id: str, entity_id: Optional[str] = None) -> List[CreditAllocation]:
        return await self.allocations.list_allocations(tenant_id, entity_id)

    # ====================
    # Expiry
    # ====================

    async def process_expiries(self, credit_types: Optional[List[str]] = None) -> ExpiryReport:
        return await self.expiry.process_expiries(credit_types)

    async def expire_all_for_tenant(self, tenant_id: str, reason: str = "manual") -> ExpiryReport:
        return await self.expiry.expire_all_for_tenant(tenant_id, reason)

    async def extend_expiry(
        self, campaign_id: str, additional_days: int, tenant_id: Optional[str] = None
    ) -> ExtendExpiryResult:
        return await self.expiry.extend_expiry(campaign_id, additional_days, tenant_id=tenant_id)

    async def warn_expiring(self, days_ahead: Optional[int] = None) -> int:
        return await self.expiry.warn_expiring(days_ahead)

    async def get_expiry_stats(self, tenant_id: str, entity_id: Optional[str] = None) -> ExpiryStats:
        return await self.expiry.get_expiry_stats(tenant_id, entity_id)

    # ====================
    # Campaigns
    # ====================

    async def create_campaign(self, request: Any, created_by: Optional[str] = None) -> CampaignResult:
        return await self.campaigns.create_campaign(request, created_by=created_by)

    async def distribute(
        self, campaign_id: str, resume: bool = False, initiated_by: Optional[str] = None
    ) -> DistributionReport:
        return await self.campaigns.distribute(campaign_id, resume=resume, initiated_by=initiated_by)

    async def get_campaign(self, campaign_id: str) -> Campaign:
        return await self.campaigns.get_campaign(campaign_id)

    async def get_distribution_status(self, campaign_id: str) -> CampaignDistributionStatus:
        return await self.campaigns.get_distribution_status(campaign_id)

    async def list_campaigns(self, status: Optional[str] = None) -> List[Campaign]:
        return await self.campaigns.list_campaigns(status)
