"""
Credit Ledger Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.

Storage is split in two: LedgerRepositoryProtocol for reads and standalone
writes, and LedgerUnitOfWorkProtocol for the atomic balance/ledger/allocation
mutations that must commit together.
"""

from datetime import datetime, timedelta
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol, runtime_checkable


# ====================
# Unit of Work Protocol
# ====================


@runtime_checkable
class LedgerUnitOfWorkProtocol(Protocol):
    """Mutations bound to one storage transaction"""

    async def ensure_account(self, tenant_id: str, entity_id: str) -> Dict[str, Any]:
        """
        Create the account row if absent.

        Returns:
            Account record (existing or newly created)
        """
        ...

    async def debit_account(self, tenant_id: str, entity_id: str, amount: int) -> Optional[Dict[str, Any]]:
        """
        Atomic conditional debit: available -= amount WHERE available >= amount AND is_active.
        free_credits is capped at the new available balance.

        Returns:
            {"previous_balance", "new_balance"} or None when the condition failed
        """
        ...

    async def credit_account(
        self,
        tenant_id: str,
        entity_id: str,
        amount: int,
        free_credits: int = 0,
        free_credits_expires_at: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Atomic credit of an active account.

        Args:
            amount: Credits to add to available_credits
            free_credits: Portion of amount that joins the free-credit sub-balance
            free_credits_expires_at: Expiry for the free-credit sub-balance (latest wins)

        Returns:
            {"previous_balance", "new_balance"} or None when the account is missing or inactive
        """
        ...

    async def sweep_free_credits(
        self, tenant_id: str, entity_id: str, now: datetime, force: bool = False
    ) -> Optional[Dict[str, Any]]:
        """
        Remove the free-credit sub-balance from available_credits.
        Unless forced, only when free_credits_expires_at <= now at mutation time.

        Returns:
            {"previous_balance", "new_balance", "swept"} or None when nothing matched
        """
        ...

    async def insert_transaction(self, txn_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Append a ledger row.

        Returns:
            Created transaction record
        """
        ...

    async def claim_idempotency_key(self, idempotency_key: str, tenant_id: str, entity_id: str) -> bool:
        """
        Insert the key into the applied-keys index.

        Returns:
            True if this caller claimed it, False if it was already applied
        """
        ...

    async def attach_idempotency_transaction(self, idempotency_key: str, transaction_id: str) -> None:
        """Record which ledger row a claimed key produced"""
        ...

    async def upsert_allocation(self, alloc_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create the active allocation for the scope
        (tenant_id, source_entity_id, target_application, credit_type, campaign_id),
        or top up the existing one: allocated and available grow by the amount and
        expires_at moves later, never earlier (None means never expires).

        Args:
            alloc_data: Allocation fields; allocated_credits is the amount to add

        Returns:
            Allocation record with "created" set to True for a new row
        """
        ...

    async def consume_allocation(self, allocation_id: str, amount: int, now: datetime) -> Optional[Dict[str, Any]]:
        """
        Atomic conditional move of amount from available to used:
        WHERE is_active AND available >= amount AND not expired.

        Returns:
            Updated allocation record with "previous_available", or None when the condition failed
        """
        ...

    async def expire_stale_allocation(self, scope: Dict[str, Any], now: datetime) -> Optional[Dict[str, Any]]:
        """
        Close the active allocation for the scope when its expires_at <= now,
        re-checked under the row lock. Runs before a top-up so expired credits
        are swept instead of merged.

        Returns:
            Updated allocation record with "previous_available", or None when nothing matched
        """
        ...

    async def expire_allocation(self, allocation_id: str, now: datetime, force: bool = False) -> Optional[Dict[str, Any]]:
        """
        Close an active allocation: available = 0, is_active = false.
        Unless forced, only when expires_at <= now at mutation time.

        Returns:
            Updated allocation record with "previous_available", or None when nothing matched
        """
        ...


# ====================
# Repository Protocol
# ====================


@runtime_checkable
class LedgerRepositoryProtocol(Protocol):
    """Repository interface for credit ledger storage"""

    def transaction(self) -> AsyncContextManager[LedgerUnitOfWorkProtocol]:
        """
        Open a unit of work. Everything done through it commits or rolls back together.
        """
        ...

    async def get_account(self, tenant_id: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """
        Get account by tenant and entity.

        Returns:
            Account record or None if not found
        """
        ...

    async def set_account_active(self, tenant_id: str, entity_id: str, is_active: bool) -> Optional[Dict[str, Any]]:
        """
        Soft-activate or deactivate an account.

        Returns:
            Updated account record or None if not found
        """
        ...

    async def get_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        """Get ledger row by ID"""
        ...

    async def list_transactions(self, tenant_id: str, entity_id: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Get ledger rows for an account, newest first.

        Args:
            filters: transaction_type, start_date, end_date, limit, offset

        Returns:
            List of transaction records
        """
        ...

    async def sum_ledger_amounts(
        self,
        tenant_id: str,
        entity_id: str,
        ledger_scope: str = "account",
        allocation_id: Optional[str] = None,
    ) -> int:
        """
        Sum signed ledger amounts for an account or one of its allocations.
        """
        ...

    async def get_idempotency_record(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        """
        Get an applied idempotency key.

        Returns:
            Key record (with transaction_id) or None if never applied
        """
        ...

    async def get_allocation(self, allocation_id: str) -> Optional[Dict[str, Any]]:
        """Get allocation by ID"""
        ...

    async def list_active_allocations(self, tenant_id: str, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get active allocations for a tenant, optionally one source entity"""
        ...

    async def list_expired_allocations(
        self, now: datetime, credit_types: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """Get active allocations with expires_at <= now"""
        ...

    async def list_expiring_allocations(
        self,
        start: datetime,
        end: datetime,
        tenant_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Get active allocations expiring in (start, end]"""
        ...

    async def list_expired_free_credit_accounts(self, now: datetime) -> List[Dict[str, Any]]:
        """Get accounts whose free-credit sub-balance expired"""
        ...

    async def list_free_credit_accounts(self, tenant_id: str) -> List[Dict[str, Any]]:
        """Get a tenant's accounts holding free credits"""
        ...

    async def extend_allocations(
        self, campaign_id: str, delta: timedelta, tenant_id: Optional[str] = None
    ) -> int:
        """
        Push expires_at forward on the campaign's active allocations.

        Returns:
            Number of allocations extended
        """
        ...

    async def list_campaign_allocations(self, campaign_id: str, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get every allocation (active or not) tagged with the campaign"""
        ...

    async def create_campaign(self, campaign_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create campaign"""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        """Get campaign by ID"""
        ...

    async def transition_campaign_status(
        self,
        campaign_id: str,
        from_statuses: List[str],
        to_status: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Conditional status change.

        Returns:
            Updated campaign record, or None if its status was not in from_statuses
        """
        ...

    async def update_campaign(self, campaign_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update campaign fields"""
        ...

    async def list_campaigns(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """List campaigns, optionally by status"""
        ...

    async def list_campaigns_ready_to_expire(self, now: datetime) -> List[Dict[str, Any]]:
        """Distributed campaigns past expiry with no active allocations left"""
        ...

    async def create_reconciliation_flag(
        self, record_type: str, record_id: str, reason: str, details: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Flag a record for manual reconciliation"""
        ...

    async def get_operation_cost(self, operation_code: str, tenant_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Active cost row for an operation code.

        Returns:
            The tenant's own row when one exists, else the global row, else None
        """
        ...

    async def upsert_operation_cost(self, cost_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create or replace the cost row for (operation_code, tenant_id); tenant_id None is global"""
        ...


# ====================
# Event Bus Protocol
# ====================


@runtime_checkable
class EventBusProtocol(Protocol):
    """Event bus interface for publishing events"""

    async def publish_event(self, event: Any) -> bool:
        """
        Publish event to NATS.

        Args:
            event: core.nats_client.Event instance
        """
        ...


# ====================
# Service Client Protocols
# ====================


@runtime_checkable
class TenantDirectoryProtocol(Protocol):
    """Interface for the tenant directory"""

    async def list_active_tenants(self) -> List[str]:
        """
        Get all active tenant IDs.

        Returns:
            List of tenant IDs
        """
        ...

    async def get_primary_entity(self, tenant_id: str) -> Optional[str]:
        """
        Get the tenant's primary organization entity.

        Returns:
            Entity ID or None if the tenant has none
        """
        ...


@runtime_checkable
class PaymentConfirmationProtocol(Protocol):
    """Interface for the payment confirmation lookup"""

    async def confirm_payment(self, payment_reference: str, tenant_id: str, amount: int) -> bool:
        """
        Check that a payment was captured for the given amount.

        Returns:
            True if confirmed, False if the payment is unknown or does not match

        Raises:
            ExternalDependencyError: If the payment service cannot be reached
        """
        ...


@runtime_checkable
class OperationCostResolverProtocol(Protocol):
    """Credit price of an operation code"""

    async def resolve(self, operation_code: str, tenant_id: Optional[str] = None) -> Any:
        """
        Look up what one operation costs for a tenant.

        Returns:
            OperationCost from the tenant override, the global row or the default
        """
        ...

    async def set_cost(
        self,
        operation_code: str,
        credit_cost: int,
        tenant_id: Optional[str] = None,
        unit: str = "operation",
    ) -> Any:
        """
        Price an operation globally, or for one tenant.

        Returns:
            OperationCostResult; a bad price is a validation_error result, not an exception
        """
        ...

    def invalidate(self, operation_code: Optional[str] = None, tenant_id: Optional[str] = None) -> None:
        """Drop cached prices; no operation_code drops all of them"""
        ...


@runtime_checkable
class AllocationStrategyProtocol(Protocol):
    """One step of the campaign allocation strategy chain"""

    name: str

    def applies_to(self, campaign: Any) -> bool:
        """Whether the strategy can serve this campaign at all"""
        ...

    async def allocate(
        self,
        campaign: Any,
        tenant_id: str,
        entity_id: str,
        amount: int,
        initiated_by: Optional[str] = None,
    ) -> List[Any]:
        """
        Allocate a tenant's campaign share.

        Returns:
            Created or topped-up allocations

        Raises:
            AllocationStrategyError: If the strategy could not allocate
        """
        ...


# ====================
# Custom Exceptions (no I/O operations)
# ====================


class CreditLedgerError(Exception):
    """Base exception for credit ledger errors"""
    pass


class CreditValidationError(CreditLedgerError):
    """Raised when input is malformed (non-positive amount, missing target, ...)"""
    pass


class InsufficientBalanceError(CreditLedgerError):
    """Raised by callers that convert an insufficient_credits result into an exception"""

    def __init__(
        self,
        message: str,
        current_balance: Optional[int] = None,
        shortfall: Optional[int] = None,
    ):
        super().__init__(message)
        self.current_balance = current_balance
        self.shortfall = shortfall


class NotFoundError(CreditLedgerError):
    """Raised when an account, allocation or campaign does not exist"""
    pass


class AccountNotFoundError(NotFoundError):
    """Raised when credit account is not found"""
    pass


class AllocationNotFoundError(NotFoundError):
    """Raised when allocation is not found"""
    pass


class CampaignNotFoundError(NotFoundError):
    """Raised when campaign is not found"""
    pass


class ExternalDependencyError(CreditLedgerError):
    """Raised when a collaborator the operation depends on is unavailable"""

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.service = service


class ConsistencyError(CreditLedgerError):
    """Raised when an invariant violation is detected; the record is flagged, not corrected"""

    def __init__(
        self,
        message: str,
        record_type: Optional[str] = None,
        record_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.record_type = record_type
        self.record_id = record_id


class CampaignStateError(CreditLedgerError):
    """Raised when a campaign is not in a state that allows the operation"""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status


class AllocationStrategyError(CreditLedgerError):
    """Raised by an allocation strategy that could not allocate (fully)"""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        allocations: Optional[List[Any]] = None,
        allocated_amount: int = 0,
    ):
        super().__init__(message)
        self.reason = reason
        self.allocations = allocations or []
        self.allocated_amount = allocated_amount


class UnitOfWorkAborted(CreditLedgerError):
    """Raised inside a unit of work to roll it back and hand a result to the caller"""

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result


__all__ = [
    "LedgerUnitOfWorkProtocol",
    "LedgerRepositoryProtocol",
    "EventBusProtocol",
    "TenantDirectoryProtocol",
    "PaymentConfirmationProtocol",
    "OperationCostResolverProtocol",
    "AllocationStrategyProtocol",
    "CreditLedgerError",
    "CreditValidationError",
    "InsufficientBalanceError",
    "NotFoundError",
    "AccountNotFoundError",
    "AllocationNotFoundError",
    "CampaignNotFoundError",
    "ExternalDependencyError",
    "ConsistencyError",
    "CampaignStateError",
    "AllocationStrategyError",
    "UnitOfWorkAborted",
]
