"""
Transaction Ledger

Append-only record of every balance mutation. Rows are written on the same
unit of work as the balance change they describe; reconciliation compares
the ledger against stored balances and flags, never corrects, a mismatch.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from .models import (
    CreditAllocation,
    CreditTransaction,
    LedgerEntry,
    LedgerScopeEnum,
    ReconciliationReport,
    ResultReasonEnum,
    TransactionQuery,
    TransactionHistoryResult,
    TransactionTypeEnum,
)
from .protocols import (
    AccountNotFoundError,
    AllocationNotFoundError,
    ConsistencyError,
    CreditValidationError,
    LedgerRepositoryProtocol,
    LedgerUnitOfWorkProtocol,
)

logger = logging.getLogger(__name__)

POSITIVE_TYPES = {TransactionTypeEnum.PURCHASE, TransactionTypeEnum.TRANSFER_IN}
NEGATIVE_TYPES = {
    TransactionTypeEnum.CONSUMPTION,
    TransactionTypeEnum.TRANSFER_OUT,
    TransactionTypeEnum.ALLOCATION,
    TransactionTypeEnum.EXPIRY,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_entry(entry: LedgerEntry) -> None:
    """
    Check the sign convention and the balance arithmetic of a ledger row.

    Raises:
        CreditValidationError: If the sign contradicts the type or the
            balances do not move by the amount
    """
    if entry.amount == 0:
        raise CreditValidationError(f"{entry.transaction_type.value} amount cannot be zero")
    if entry.transaction_type in POSITIVE_TYPES and entry.amount < 0:
        raise CreditValidationError(f"{entry.transaction_type.value} amount must be positive, got {entry.amount}")
    if entry.transaction_type in NEGATIVE_TYPES and entry.amount > 0:
        raise CreditValidationError(f"{entry.transaction_type.value} amount must be negative, got {entry.amount}")
    if entry.previous_balance + entry.amount != entry.new_balance:
        raise CreditValidationError(
            f"balance {entry.previous_balance} + {entry.amount} does not equal {entry.new_balance}"
        )
    if entry.ledger_scope == LedgerScopeEnum.ALLOCATION and not entry.allocation_id:
        raise CreditValidationError("allocation-scope entries require allocation_id")


class TransactionLedger:
    """Writes, reads and reconciles ledger rows"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.clock = clock or _utcnow

    async def record(self, uow: LedgerUnitOfWorkProtocol, entry: LedgerEntry) -> str:
        """
        Append a ledger row on the caller's unit of work.

        Args:
            uow: Open unit of work that also holds the balance write
            entry: Row to write

        Returns:
            The new transaction_id

        Raises:
            CreditValidationError: If the row breaks the sign convention
        """
        validate_entry(entry)

        transaction_id = f"cred_txn_{uuid.uuid4().hex[:20]}"
        txn_data = entry.model_dump(mode="json")
        txn_data["transaction_id"] = transaction_id
        txn_data["created_at"] = self.clock()

        await uow.insert_transaction(txn_data)
        logger.debug(
            f"Recorded {entry.transaction_type.value} {entry.amount} for "
            f"{entry.tenant_id}/{entry.entity_id} ({transaction_id})"
        )
        return transaction_id

    async def record_allocation_expiry(
        self, uow: LedgerUnitOfWorkProtocol, expired: Dict[str, Any], reason: str
    ) -> Optional[str]:
        """Expiry row for an allocation closed on uow; None when nothing was left to sweep"""
        swept = expired.get("previous_available", 0)
        if swept <= 0:
            return None
        return await self.record(uow, LedgerEntry(
            tenant_id=expired["tenant_id"],
            entity_id=expired["source_entity_id"],
            transaction_type=TransactionTypeEnum.EXPIRY,
            amount=-swept,
            previous_balance=swept,
            new_balance=0,
            operation_code="expiry:allocation",
            initiated_by="system",
            ledger_scope=LedgerScopeEnum.ALLOCATION,
            allocation_id=expired["allocation_id"],
            metadata={"reason": reason, "campaign_id": expired.get("campaign_id")},
        ))

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        row = await self.repository.get_transaction(transaction_id)
        return CreditTransaction.model_validate(row) if row else None

    async def history(
        self,
        tenant_id: str,
        entity_id: str,
        transaction_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionHistoryResult:
        """Ledger rows for an account, most recent first; bad filters are a validation_error result"""
        try:
            query = TransactionQuery(
                transaction_type=transaction_type,
                start_date=start,
                end_date=end,
                limit=limit,
                offset=offset,
            )
        except ValidationError as e:
            return TransactionHistoryResult(
                ok=False,
                reason=ResultReasonEnum.VALIDATION_ERROR,
                message=f"Invalid history query: {e}",
            )

        filters: Dict[str, Any] = query.model_dump(exclude_none=True)
        if query.transaction_type is not None:
            filters["transaction_type"] = query.transaction_type.value

        rows = await self.repository.list_transactions(tenant_id, entity_id, filters)
        return TransactionHistoryResult(
            ok=True,
            transactions=[CreditTransaction.model_validate(row) for row in rows],
        )

    # ====================
    # Reconciliation
    # ====================

    async def reconcile_account(self, tenant_id: str, entity_id: str) -> ReconciliationReport:
        """
        Check that the account-scope ledger sums to available + reserved.

        Raises:
            AccountNotFoundError: If the account does not exist
            ConsistencyError: On mismatch, after flagging the account
        """
        account = await self.repository.get_account(tenant_id, entity_id)
        if not account:
            raise AccountNotFoundError(f"Credit account not found: {tenant_id}/{entity_id}")

        expected = account.get("available_credits", 0) + account.get("reserved_credits", 0)
        actual = await self.repository.sum_ledger_amounts(
            tenant_id, entity_id, ledger_scope=LedgerScopeEnum.ACCOUNT.value
        )
        record_id = f"{tenant_id}/{entity_id}"
        report = ReconciliationReport(
            record_type="account",
            record_id=record_id,
            consistent=expected == actual,
            expected=expected,
            actual=actual,
            checked_at=self.clock(),
        )
        if not report.consistent:
            await self._flag_and_raise(
                report,
                f"Ledger sum {actual} does not match balance {expected} for account {record_id}",
            )
        return report

    async def reconcile_allocation(self, allocation_id: str) -> ReconciliationReport:
        """
        Check used + available == allocated and that the allocation-scope
        ledger sums to available - allocated.

        Raises:
            AllocationNotFoundError: If the allocation does not exist
            ConsistencyError: On mismatch, after flagging the allocation
        """
        row = await self.repository.get_allocation(allocation_id)
        if not row:
            raise AllocationNotFoundError(f"Allocation not found: {allocation_id}")
        allocation = CreditAllocation.model_validate(row)

        expected = allocation.available_credits - allocation.allocated_credits
        actual = await self.repository.sum_ledger_amounts(
            allocation.tenant_id,
            allocation.source_entity_id,
            ledger_scope=LedgerScopeEnum.ALLOCATION.value,
            allocation_id=allocation_id,
        )
        balanced = allocation.is_balanced()
        report = ReconciliationReport(
            record_type="allocation",
            record_id=allocation_id,
            consistent=balanced and expected == actual,
            expected=expected,
            actual=actual,
            details={
                "allocated_credits": allocation.allocated_credits,
                "used_credits": allocation.used_credits,
                "available_credits": allocation.available_credits,
                "is_active": allocation.is_active,
                "balanced": balanced,
            },
            checked_at=self.clock(),
        )
        if not report.consistent:
            await self._flag_and_raise(
                report,
                f"Allocation {allocation_id} is inconsistent (balanced={balanced}, ledger {actual} vs {expected})",
            )
        return report

    async def _flag_and_raise(self, report: ReconciliationReport, message: str) -> None:
        details = dict(report.details)
        details.update({"expected": report.expected, "actual": report.actual})
        await self.repository.create_reconciliation_flag(
            report.record_type, report.record_id, message, details
        )
        logger.error(message)
        raise ConsistencyError(message, record_type=report.record_type, record_id=report.record_id)
