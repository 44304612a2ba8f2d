"""
Transfer Engine

Moves credits between two entities of the same tenant as two atomic steps:
debit the sender, then credit the recipient. A failed second step is
compensated by re-crediting the sender with an adjustment row.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from .balance_store import BalanceStore
from .consumption import ConsumptionEngine, is_positive_int
from .events.publishers import publish_credits_transferred
from .ledger import TransactionLedger
from .models import (
    LedgerEntry,
    ResultReasonEnum,
    TransactionTypeEnum,
    TransferResult,
)
from .protocols import (
    ConsistencyError,
    EventBusProtocol,
    LedgerRepositoryProtocol,
    UnitOfWorkAborted,
)

logger = logging.getLogger(__name__)


class TransferEngine:
    """Intra-tenant credit transfers with compensation"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        balance_store: BalanceStore,
        ledger: TransactionLedger,
        consumption: ConsumptionEngine,
        event_bus: Optional[EventBusProtocol] = None,
    ):
        self.repository = repository
        self.balance_store = balance_store
        self.ledger = ledger
        self.consumption = consumption
        self.event_bus = event_bus

    async def transfer(
        self,
        tenant_id: str,
        from_entity_id: str,
        to_entity_id: str,
        amount: int,
        initiated_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransferResult:
        """
        Transfer credits from one entity to another.

        Returns:
            TransferResult; compensated is True when step 2 failed and the
            sender was re-credited

        Raises:
            ConsistencyError: If the compensation itself failed (the account is flagged)
        """
        if not is_positive_int(amount):
            return TransferResult(
                ok=False,
                reason=ResultReasonEnum.INVALID_AMOUNT,
                message=f"amount must be a positive integer, got {amount!r}",
            )
        if not tenant_id or not from_entity_id or not to_entity_id:
            return TransferResult(
                ok=False,
                reason=ResultReasonEnum.VALIDATION_ERROR,
                message="tenant_id, from_entity_id and to_entity_id are required",
            )
        if from_entity_id == to_entity_id:
            return TransferResult(
                ok=False,
                reason=ResultReasonEnum.VALIDATION_ERROR,
                message="Cannot transfer credits to the same entity",
            )

        transfer_id = f"xfer_{uuid.uuid4().hex[:20]}"
        row_metadata = dict(metadata or {})
        row_metadata.update({
            "transfer_id": transfer_id,
            "from_entity_id": from_entity_id,
            "to_entity_id": to_entity_id,
        })

        # Step 1: debit sender
        async with self.repository.transaction() as uow:
            debit = await self.consumption.debit(
                uow,
                tenant_id,
                from_entity_id,
                amount,
                operation_code=f"transfer:{transfer_id}",
                transaction_type=TransactionTypeEnum.TRANSFER_OUT,
                metadata=row_metadata,
                initiated_by=initiated_by,
            )

        if debit is None:
            reason, current_balance, shortfall = await self.consumption.explain_rejection(
                tenant_id, from_entity_id, amount
            )
            logger.info(f"Transfer {transfer_id} rejected at debit: {reason.value}")
            return TransferResult(
                ok=False,
                reason=reason,
                message=f"Cannot transfer {amount} credits from {from_entity_id}",
                transfer_id=transfer_id,
                current_balance=current_balance,
                shortfall=shortfall,
            )

        # Step 2: credit recipient
        try:
            async with self.repository.transaction() as uow:
                change = await self.balance_store.credit(uow, tenant_id, to_entity_id, amount)
                if change is None:
                    raise UnitOfWorkAborted(f"Target account {tenant_id}/{to_entity_id} is inactive")
                await self.ledger.record(uow, LedgerEntry(
                    tenant_id=tenant_id,
                    entity_id=to_entity_id,
                    transaction_type=TransactionTypeEnum.TRANSFER_IN,
                    amount=amount,
                    previous_balance=change.previous_balance,
                    new_balance=change.new_balance,
                    operation_code=f"transfer:{transfer_id}",
                    initiated_by=initiated_by,
                    metadata=row_metadata,
                ))
        except Exception as e:
            logger.error(f"Transfer {transfer_id} failed at credit step: {e}")
            from_balance = await self._compensate(tenant_id, from_entity_id, amount, transfer_id, str(e))
            return TransferResult(
                ok=False,
                reason=ResultReasonEnum.TRANSFER_FAILED,
                message=str(e),
                transfer_id=transfer_id,
                from_balance=from_balance,
                compensated=True,
            )

        logger.info(
            f"Transferred {amount} credits {tenant_id}/{from_entity_id} -> {to_entity_id} ({transfer_id})"
        )

        if self.event_bus:
            await publish_credits_transferred(
                self.event_bus,
                transfer_id=transfer_id,
                tenant_id=tenant_id,
                from_entity_id=from_entity_id,
                to_entity_id=to_entity_id,
                amount=amount,
                from_balance_after=debit.change.new_balance,
                to_balance_after=change.new_balance,
            )

        return TransferResult(
            ok=True,
            transfer_id=transfer_id,
            from_balance=debit.change.new_balance,
            to_balance=change.new_balance,
        )

    async def _compensate(
        self, tenant_id: str, entity_id: str, amount: int, transfer_id: str, failure: str
    ) -> int:
        """Re-credit the sender; returns its balance afterwards"""
        try:
            async with self.repository.transaction() as uow:
                change = await self.balance_store.credit(uow, tenant_id, entity_id, amount)
                if change is None:
                    raise UnitOfWorkAborted(f"Source account {tenant_id}/{entity_id} is inactive")
                await self.ledger.record(uow, LedgerEntry(
                    tenant_id=tenant_id,
                    entity_id=entity_id,
                    transaction_type=TransactionTypeEnum.ADJUSTMENT,
                    amount=amount,
                    previous_balance=change.previous_balance,
                    new_balance=change.new_balance,
                    operation_code=f"transfer_compensation:{transfer_id}",
                    initiated_by="system",
                    metadata={"transfer_id": transfer_id, "failure": failure},
                ))
        except Exception as e:
            record_id = f"{tenant_id}/{entity_id}"
            message = f"Compensation for transfer {transfer_id} failed: {e}"
            logger.critical(message, exc_info=True)
            await self.repository.create_reconciliation_flag(
                "account",
                record_id,
                message,
                {"transfer_id": transfer_id, "amount": amount, "failure": failure},
            )
            raise ConsistencyError(message, record_type="account", record_id=record_id) from e

        logger.warning(f"Compensated transfer {transfer_id}: re-credited {amount} to {tenant_id}/{entity_id}")
        return change.new_balance
