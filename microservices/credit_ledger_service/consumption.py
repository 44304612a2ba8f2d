"""
Consumption Engine

Charges operations against an account balance. The debit is one atomic
conditional update, so concurrent consumers can never overdraw an account.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from core.config.ledger_config import LedgerPolicyConfig

from .balance_store import BalanceStore
from .events.publishers import publish_balance_low, publish_credits_consumed
from .ledger import TransactionLedger
from .models import (
    BalanceChange,
    ConsumeResult,
    LedgerEntry,
    ResultReasonEnum,
    TransactionTypeEnum,
)
from .protocols import (
    EventBusProtocol,
    LedgerRepositoryProtocol,
    LedgerUnitOfWorkProtocol,
    OperationCostResolverProtocol,
)

logger = logging.getLogger(__name__)


def is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass
class Debit:
    """A committed-on-the-unit-of-work debit and its ledger row"""
    change: BalanceChange
    transaction_id: str


class ConsumptionEngine:
    """Atomic consumption of account credits"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        balance_store: BalanceStore,
        ledger: TransactionLedger,
        event_bus: Optional[EventBusProtocol] = None,
        policy: Optional[LedgerPolicyConfig] = None,
        cost_resolver: Optional[OperationCostResolverProtocol] = None,
    ):
        self.repository = repository
        self.balance_store = balance_store
        self.ledger = ledger
        self.event_bus = event_bus
        self.policy = policy or LedgerPolicyConfig()
        self.cost_resolver = cost_resolver

    async def consume(
        self,
        tenant_id: str,
        entity_id: str,
        operation_code: str,
        credit_cost: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
    ) -> ConsumeResult:
        """
        Charge credit_cost to the account.

        Args:
            tenant_id: Tenant ID
            entity_id: Charged entity
            operation_code: What is being paid for
            credit_cost: Credits to consume (> 0); priced from operation_code when omitted
            metadata: Stored on the ledger row (optional)
            initiated_by: Actor ID (optional)

        Returns:
            ConsumeResult; never raises for insufficient credits
        """
        if credit_cost is not None and not is_positive_int(credit_cost):
            return ConsumeResult(
                ok=False,
                reason=ResultReasonEnum.INVALID_AMOUNT,
                message=f"credit_cost must be a positive integer, got {credit_cost!r}",
            )
        if not tenant_id or not entity_id or not operation_code or not operation_code.strip():
            return ConsumeResult(
                ok=False,
                reason=ResultReasonEnum.VALIDATION_ERROR,
                message="tenant_id, entity_id and operation_code are required",
            )
        if credit_cost is None:
            if self.cost_resolver is None:
                return ConsumeResult(
                    ok=False,
                    reason=ResultReasonEnum.VALIDATION_ERROR,
                    message="credit_cost is required when operation pricing is not configured",
                )
            credit_cost = (await self.cost_resolver.resolve(operation_code, tenant_id)).credit_cost

        async with self.repository.transaction() as uow:
            debit = await self.debit(
                uow,
                tenant_id,
                entity_id,
                credit_cost,
                operation_code=operation_code,
                transaction_type=TransactionTypeEnum.CONSUMPTION,
                metadata=metadata,
                initiated_by=initiated_by,
            )

        if debit is None:
            reason, current_balance, shortfall = await self.explain_rejection(tenant_id, entity_id, credit_cost)
            logger.info(
                f"Consumption of {credit_cost} for {tenant_id}/{entity_id} rejected: {reason.value}"
            )
            return ConsumeResult(
                ok=False,
                reason=reason,
                message=f"Cannot consume {credit_cost} credits",
                credit_cost=credit_cost,
                current_balance=current_balance,
                shortfall=shortfall,
            )

        logger.info(
            f"Consumed {credit_cost} credits for {tenant_id}/{entity_id} ({operation_code}): "
            f"{debit.change.previous_balance} -> {debit.change.new_balance}"
        )

        if self.event_bus:
            await publish_credits_consumed(
                self.event_bus,
                tenant_id=tenant_id,
                entity_id=entity_id,
                operation_code=operation_code,
                amount=credit_cost,
                transaction_id=debit.transaction_id,
                balance_before=debit.change.previous_balance,
                balance_after=debit.change.new_balance,
            )
            await self._publish_threshold_alert(tenant_id, entity_id, debit.change)

        return ConsumeResult(
            ok=True,
            balance=debit.change.new_balance,
            transaction_id=debit.transaction_id,
            credit_cost=credit_cost,
        )

    async def debit(
        self,
        uow: LedgerUnitOfWorkProtocol,
        tenant_id: str,
        entity_id: str,
        amount: int,
        operation_code: str,
        transaction_type: TransactionTypeEnum = TransactionTypeEnum.ALLOCATION,
        metadata: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
        allocation_id: Optional[str] = None,
    ) -> Optional[Debit]:
        """
        Debit an account and write its ledger row on an open unit of work.

        Returns:
            Debit, or None when the balance is insufficient or the account inactive
        """
        change = await self.balance_store.debit(uow, tenant_id, entity_id, amount)
        if change is None:
            return None

        transaction_id = await self.ledger.record(uow, LedgerEntry(
            tenant_id=tenant_id,
            entity_id=entity_id,
            transaction_type=transaction_type,
            amount=-amount,
            previous_balance=change.previous_balance,
            new_balance=change.new_balance,
            operation_code=operation_code,
            initiated_by=initiated_by,
            allocation_id=allocation_id,
            metadata=metadata or {},
        ))
        return Debit(change=change, transaction_id=transaction_id)

    async def explain_rejection(
        self, tenant_id: str, entity_id: str, amount: int
    ) -> Tuple[ResultReasonEnum, int, Optional[int]]:
        """Reason, current balance and shortfall for a debit that did not apply"""
        account = await self.repository.get_account(tenant_id, entity_id)
        if account and not account.get("is_active", True):
            return ResultReasonEnum.ACCOUNT_INACTIVE, account.get("available_credits", 0), None

        current_balance = account.get("available_credits", 0) if account else 0
        return ResultReasonEnum.INSUFFICIENT_CREDITS, current_balance, max(amount - current_balance, 0)

    async def _publish_threshold_alert(self, tenant_id: str, entity_id: str, change: BalanceChange):
        critical = self.policy.critical_balance_threshold
        low = self.policy.low_balance_threshold

        if change.new_balance <= critical < change.previous_balance:
            threshold, severity = critical, "critical"
        elif change.new_balance <= low < change.previous_balance:
            threshold, severity = low, "warning"
        else:
            return

        await publish_balance_low(
            self.event_bus,
            tenant_id=tenant_id,
            entity_id=entity_id,
            balance=change.new_balance,
            threshold=threshold,
            severity=severity,
        )
