"""
Purchase / Credit-Addition Engine

Adds credits to an account from payments, plans, campaigns, manual grants
and transfers. An idempotency key makes a retried addition a no-op that
returns the original result.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .balance_store import BalanceStore
from .consumption import is_positive_int
from .events.publishers import publish_credits_added
from .ledger import TransactionLedger
from .models import (
    AddCreditsResult,
    CreditCategoryEnum,
    CreditSourceEnum,
    LedgerEntry,
    ResultReasonEnum,
    TransactionTypeEnum,
)
from .protocols import (
    EventBusProtocol,
    LedgerRepositoryProtocol,
    PaymentConfirmationProtocol,
    UnitOfWorkAborted,
)

logger = logging.getLogger(__name__)

# Sources recorded as purchases; everything else is an adjustment
PURCHASE_SOURCES = {CreditSourceEnum.PAYMENT.value, CreditSourceEnum.PLAN.value}


class PurchaseEngine:
    """Idempotent credit additions"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        balance_store: BalanceStore,
        ledger: TransactionLedger,
        event_bus: Optional[EventBusProtocol] = None,
        payment_client: Optional[PaymentConfirmationProtocol] = None,
    ):
        self.repository = repository
        self.balance_store = balance_store
        self.ledger = ledger
        self.event_bus = event_bus
        self.payment_client = payment_client

    async def add_credits(
        self,
        tenant_id: str,
        entity_id: str,
        amount: int,
        source: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
        credit_category: str = CreditCategoryEnum.PAID.value,
        expires_at: Optional[datetime] = None,
    ) -> AddCreditsResult:
        """
        Add credits to an account, creating it if needed.

        Args:
            tenant_id: Tenant ID
            entity_id: Credited entity
            amount: Credits to add (> 0)
            source: payment, plan, campaign, manual or transfer
            idempotency_key: External payment/session reference; required for payments
            metadata: Stored on the ledger row (optional)
            initiated_by: Actor ID (optional)
            credit_category: paid or free
            expires_at: Expiry of free credits (free category only)

        Returns:
            AddCreditsResult; replayed is True when the key was already applied

        Raises:
            ExternalDependencyError: If payment confirmation is configured and unavailable
        """
        if not is_positive_int(amount):
            return AddCreditsResult(
                ok=False,
                reason=ResultReasonEnum.INVALID_AMOUNT,
                message=f"amount must be a positive integer, got {amount!r}",
            )

        error = self._validate(tenant_id, entity_id, source, idempotency_key, credit_category, expires_at)
        if error:
            return AddCreditsResult(ok=False, reason=ResultReasonEnum.VALIDATION_ERROR, message=error)

        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        # Fast path: key already applied
        if idempotency_key:
            record = await self.repository.get_idempotency_record(idempotency_key)
            if record:
                return await self._replay(record, tenant_id, entity_id)

        if source == CreditSourceEnum.PAYMENT.value and self.payment_client:
            confirmed = await self.payment_client.confirm_payment(idempotency_key, tenant_id, amount)
            if not confirmed:
                logger.warning(f"Payment {idempotency_key} not confirmed for {tenant_id}")
                return AddCreditsResult(
                    ok=False,
                    reason=ResultReasonEnum.PAYMENT_NOT_CONFIRMED,
                    message=f"Payment {idempotency_key} is not confirmed",
                )

        is_free = credit_category == CreditCategoryEnum.FREE.value
        transaction_type = (
            TransactionTypeEnum.PURCHASE if source in PURCHASE_SOURCES else TransactionTypeEnum.ADJUSTMENT
        )
        entry_metadata = dict(metadata or {})
        entry_metadata.update({"source": source, "credit_category": credit_category})

        claimed = True
        try:
            async with self.repository.transaction() as uow:
                if idempotency_key:
                    claimed = await uow.claim_idempotency_key(idempotency_key, tenant_id, entity_id)
                if claimed:
                    change = await self.balance_store.credit(
                        uow,
                        tenant_id,
                        entity_id,
                        amount,
                        free_credits=amount if is_free else 0,
                        free_credits_expires_at=expires_at if is_free else None,
                    )
                    if change is None:
                        raise UnitOfWorkAborted(
                            "account inactive",
                            AddCreditsResult(
                                ok=False,
                                reason=ResultReasonEnum.ACCOUNT_INACTIVE,
                                message=f"Credit account {tenant_id}/{entity_id} is inactive",
                            ),
                        )

                    transaction_id = await self.ledger.record(uow, LedgerEntry(
                        tenant_id=tenant_id,
                        entity_id=entity_id,
                        transaction_type=transaction_type,
                        amount=amount,
                        previous_balance=change.previous_balance,
                        new_balance=change.new_balance,
                        operation_code=f"credits.{source}",
                        initiated_by=initiated_by,
                        idempotency_key=idempotency_key,
                        metadata=entry_metadata,
                    ))
                    if idempotency_key:
                        await uow.attach_idempotency_transaction(idempotency_key, transaction_id)
        except UnitOfWorkAborted as aborted:
            logger.info(f"Credit addition for {tenant_id}/{entity_id} rolled back: {aborted}")
            return aborted.result

        if not claimed:
            # A concurrent retry applied the key first
            record = await self.repository.get_idempotency_record(idempotency_key)
            return await self._replay(record or {}, tenant_id, entity_id)

        logger.info(
            f"Added {amount} {credit_category} credits to {tenant_id}/{entity_id} from {source}: "
            f"{change.previous_balance} -> {change.new_balance}"
        )

        if self.event_bus:
            await publish_credits_added(
                self.event_bus,
                tenant_id=tenant_id,
                entity_id=entity_id,
                amount=amount,
                source=source,
                transaction_id=transaction_id,
                balance_after=change.new_balance,
                credit_category=credit_category,
                idempotency_key=idempotency_key,
            )

        return AddCreditsResult(ok=True, balance=change.new_balance, transaction_id=transaction_id)

    def _validate(
        self,
        tenant_id: str,
        entity_id: str,
        source: str,
        idempotency_key: Optional[str],
        credit_category: str,
        expires_at: Optional[datetime],
    ) -> Optional[str]:
        if not tenant_id or not entity_id:
            return "tenant_id and entity_id are required"
        if source not in {s.value for s in CreditSourceEnum}:
            return f"source must be one of: {[s.value for s in CreditSourceEnum]}"
        if source == CreditSourceEnum.PAYMENT.value and not idempotency_key:
            return "idempotency_key is required for payment credits"
        if credit_category not in {c.value for c in CreditCategoryEnum}:
            return f"credit_category must be one of: {[c.value for c in CreditCategoryEnum]}"
        if expires_at is not None and credit_category != CreditCategoryEnum.FREE.value:
            return "expires_at only applies to free credits"
        return None

    async def _replay(self, record: Dict[str, Any], tenant_id: str, entity_id: str) -> AddCreditsResult:
        """Rebuild the result of an already-applied key from its ledger row"""
        transaction_id = record.get("transaction_id")
        transaction = await self.repository.get_transaction(transaction_id) if transaction_id else None

        if transaction:
            balance = transaction.get("new_balance")
        else:
            account = await self.repository.get_account(tenant_id, entity_id)
            balance = account.get("available_credits", 0) if account else 0

        logger.info(f"Idempotency key {record.get('idempotency_key')} already applied; replaying result")
        return AddCreditsResult(ok=True, balance=balance, transaction_id=transaction_id, replayed=True)
