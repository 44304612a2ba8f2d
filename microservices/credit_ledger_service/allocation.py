"""
Allocation Engine

Earmarks part of an entity's balance for one application. The source debit
and the allocation write share a unit of work. Consuming from an allocation
touches only the allocation row: allocations are a sub-ledger of their own.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .consumption import ConsumptionEngine, is_positive_int
from .events.publishers import publish_allocation_created, publish_allocation_expired
from .ledger import TransactionLedger
from .models import (
    AllocationConsumeResult,
    AllocationResult,
    CreditAllocation,
    CreditTypeEnum,
    LedgerEntry,
    LedgerScopeEnum,
    ResultReasonEnum,
    TransactionTypeEnum,
    parse_allocation_metadata,
)
from .protocols import (
    AllocationNotFoundError,
    ConsistencyError,
    EventBusProtocol,
    LedgerRepositoryProtocol,
    UnitOfWorkAborted,
)

logger = logging.getLogger(__name__)

CREDIT_TYPES = {c.value for c in CreditTypeEnum}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AllocationEngine:
    """Application allocations: create/top-up, consume, list"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        ledger: TransactionLedger,
        consumption: ConsumptionEngine,
        event_bus: Optional[EventBusProtocol] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.ledger = ledger
        self.consumption = consumption
        self.event_bus = event_bus
        self.clock = clock or _utcnow

    # ====================
    # Allocate
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
        """
        Move credits from an entity's balance into an application allocation.

        Tops up the active allocation for (tenant, source, application,
        credit_type, campaign) when one exists. A top-up can push expires_at
        later but never earlier. An allocation already past its expiry is
        swept first, so the top-up starts a fresh allocation.

        Returns:
            AllocationResult; insufficient balance writes nothing
        """
        if not is_positive_int(amount):
            return AllocationResult(
                ok=False,
                reason=ResultReasonEnum.INVALID_AMOUNT,
                message=f"amount must be a positive integer, got {amount!r}",
            )

        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        error = self._validate(tenant_id, source_entity_id, target_application, credit_type, purpose, expires_at)
        if error:
            return AllocationResult(ok=False, reason=ResultReasonEnum.VALIDATION_ERROR, message=error)

        try:
            parsed_metadata = parse_allocation_metadata(metadata, target_application)
        except ValueError as e:
            return AllocationResult(ok=False, reason=ResultReasonEnum.VALIDATION_ERROR, message=str(e))

        scope = {
            "tenant_id": tenant_id,
            "source_entity_id": source_entity_id,
            "target_application": target_application,
            "credit_type": credit_type,
            "campaign_id": campaign_id,
        }
        try:
            async with self.repository.transaction() as uow:
                # An expired but unswept allocation is closed, never topped up
                stale = await uow.expire_stale_allocation(scope, self.clock())
                if stale:
                    await self.ledger.record_allocation_expiry(uow, stale, "expired")

                row = await uow.upsert_allocation({
                    **scope,
                    "allocated_credits": amount,
                    "purpose": purpose,
                    "expires_at": expires_at,
                    "auto_replenish": auto_replenish,
                    "metadata": parsed_metadata.model_dump(mode="json") if parsed_metadata else {},
                })
                allocation = CreditAllocation.model_validate(row)

                debit = await self.consumption.debit(
                    uow,
                    tenant_id,
                    source_entity_id,
                    amount,
                    operation_code=f"allocation:{target_application}",
                    transaction_type=TransactionTypeEnum.ALLOCATION,
                    metadata={
                        "target_application": target_application,
                        "credit_type": credit_type,
                        "campaign_id": campaign_id,
                    },
                    initiated_by=initiated_by,
                    allocation_id=allocation.allocation_id,
                )
                if debit is None:
                    raise UnitOfWorkAborted("source debit rejected")
        except UnitOfWorkAborted:
            reason, current_balance, shortfall = await self.consumption.explain_rejection(
                tenant_id, source_entity_id, amount
            )
            logger.info(
                f"Allocation of {amount} to {target_application} for {tenant_id}/{source_entity_id} "
                f"rejected: {reason.value}"
            )
            return AllocationResult(
                ok=False,
                reason=reason,
                message=f"Cannot allocate {amount} credits",
                current_balance=current_balance,
                shortfall=shortfall,
            )

        created = bool(row.get("created", True))
        logger.info(
            f"{'Created' if created else 'Topped up'} allocation {allocation.allocation_id}: "
            f"{amount} {credit_type} credits to {target_application} ({tenant_id}/{source_entity_id})"
        )

        if stale and self.event_bus:
            await publish_allocation_expired(
                self.event_bus,
                tenant_id=tenant_id,
                entity_id=source_entity_id,
                credit_type=credit_type,
                expired_credits=stale.get("previous_available", 0),
                allocation_id=stale["allocation_id"],
                target_application=target_application,
                campaign_id=campaign_id,
                reason="expired",
            )

        if self.event_bus:
            await publish_allocation_created(
                self.event_bus,
                allocation_id=allocation.allocation_id,
                tenant_id=tenant_id,
                source_entity_id=source_entity_id,
                target_application=target_application,
                credit_type=credit_type,
                amount=amount,
                allocated_credits=allocation.allocated_credits,
                available_credits=allocation.available_credits,
                created=created,
                campaign_id=campaign_id,
                expires_at=allocation.expires_at,
            )

        return AllocationResult(
            ok=True,
            allocation=allocation,
            source_balance=debit.change.new_balance,
            transaction_id=debit.transaction_id,
        )

    def _validate(
        self,
        tenant_id: str,
        source_entity_id: str,
        target_application: str,
        credit_type: str,
        purpose: Optional[str],
        expires_at: Optional[datetime],
    ) -> Optional[str]:
        if not tenant_id or not source_entity_id:
            return "tenant_id and source_entity_id are required"
        if not target_application or not target_application.strip():
            return "target_application is required"
        if credit_type not in CREDIT_TYPES:
            return f"credit_type must be one of: {sorted(CREDIT_TYPES)}"
        if purpose is not None and len(purpose) > 500:
            return "purpose must be at most 500 characters"
        if expires_at is not None and expires_at <= self.clock():
            return "expires_at must be in the future"
        return None

    # ====================
    # Consume from allocation
    # ====================

    async def consume_from_allocation(
        self,
        allocation_id: str,
        amount: int,
        operation_code: str = "allocation.consume",
        initiated_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AllocationConsumeResult:
        """
        Spend credits from an allocation. The source account balance is not touched.

        Raises:
            AllocationNotFoundError: If the allocation does not exist
            ConsistencyError: If the row breaks used + available == allocated
        """
        if not is_positive_int(amount):
            return AllocationConsumeResult(
                ok=False,
                allocation_id=allocation_id,
                reason=ResultReasonEnum.INVALID_AMOUNT,
                message=f"amount must be a positive integer, got {amount!r}",
            )
        if not operation_code or not operation_code.strip():
            return AllocationConsumeResult(
                ok=False,
                allocation_id=allocation_id,
                reason=ResultReasonEnum.VALIDATION_ERROR,
                message="operation_code is required",
            )

        existing = await self.repository.get_allocation(allocation_id)
        if not existing:
            raise AllocationNotFoundError(f"Allocation not found: {allocation_id}")

        now = self.clock()
        try:
            async with self.repository.transaction() as uow:
                row = await uow.consume_allocation(allocation_id, amount, now)
                if row:
                    allocation = CreditAllocation.model_validate(row)
                    if not allocation.is_balanced():
                        raise ConsistencyError(
                            f"Allocation {allocation_id} unbalanced after consume: "
                            f"used {allocation.used_credits} + available {allocation.available_credits} "
                            f"!= allocated {allocation.allocated_credits}",
                            record_type="allocation",
                            record_id=allocation_id,
                        )
                    transaction_id = await self.ledger.record(uow, LedgerEntry(
                        tenant_id=allocation.tenant_id,
                        entity_id=allocation.source_entity_id,
                        transaction_type=TransactionTypeEnum.CONSUMPTION,
                        amount=-amount,
                        previous_balance=row["previous_available"],
                        new_balance=allocation.available_credits,
                        operation_code=operation_code,
                        initiated_by=initiated_by,
                        ledger_scope=LedgerScopeEnum.ALLOCATION,
                        allocation_id=allocation_id,
                        metadata=metadata or {},
                    ))
        except ConsistencyError as e:
            logger.critical(str(e))
            await self.repository.create_reconciliation_flag(
                "allocation", allocation_id, str(e), {"amount": amount, "operation_code": operation_code}
            )
            raise

        if not row:
            return await self._explain_allocation_rejection(allocation_id, amount, now)

        logger.info(
            f"Consumed {amount} from allocation {allocation_id} ({operation_code}): "
            f"{allocation.available_credits} left"
        )
        return AllocationConsumeResult(
            ok=True,
            allocation_id=allocation_id,
            available_credits=allocation.available_credits,
            used_credits=allocation.used_credits,
            transaction_id=transaction_id,
        )

    async def _explain_allocation_rejection(
        self, allocation_id: str, amount: int, now: datetime
    ) -> AllocationConsumeResult:
        row = await self.repository.get_allocation(allocation_id)
        if not row:
            raise AllocationNotFoundError(f"Allocation not found: {allocation_id}")
        allocation = CreditAllocation.model_validate(row)

        if not allocation.is_active:
            reason = ResultReasonEnum.ALLOCATION_INACTIVE
            shortfall = None
        elif allocation.expires_at is not None and allocation.expires_at <= now:
            reason = ResultReasonEnum.ALLOCATION_EXPIRED
            shortfall = None
        else:
            reason = ResultReasonEnum.INSUFFICIENT_CREDITS
            shortfall = max(amount - allocation.available_credits, 0)

        logger.info(f"Consume of {amount} from allocation {allocation_id} rejected: {reason.value}")
        return AllocationConsumeResult(
            ok=False,
            allocation_id=allocation_id,
            reason=reason,
            message=f"Cannot consume {amount} credits from allocation {allocation_id}",
            available_credits=allocation.available_credits,
            used_credits=allocation.used_credits,
            shortfall=shortfall,
        )

    # ====================
    # Queries
    # ====================

    async def get_allocation(self, allocation_id: str) -> CreditAllocation:
        """
        Raises:
            AllocationNotFoundError: If the allocation does not exist
        """
        row = await self.repository.get_allocation(allocation_id)
        if not row:
            raise AllocationNotFoundError(f"Allocation not found: {allocation_id}")
        return CreditAllocation.model_validate(row)

    async def list_allocations(self, tenant_id: str, entity_id: Optional[str] = None) -> List[CreditAllocation]:
        """Active allocations only"""
        rows = await self.repository.list_active_allocations(tenant_id, entity_id)
        return [CreditAllocation.model_validate(row) for row in rows]
