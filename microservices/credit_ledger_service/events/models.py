"""
Credit Ledger Service Event Models

Event data models for balance, allocation and campaign lifecycle events.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

# =============================================================================
# Event Type Definitions (Service-Specific)
# =============================================================================

class CreditLedgerEventType(str, Enum):
    """
    Events published by credit_ledger_service.

    Stream: credit-ledger-stream
    Subjects: credit_ledger.>
    """
    CREDITS_ADDED = "credit_ledger.credits.added"
    CREDITS_CONSUMED = "credit_ledger.credits.consumed"
    CREDITS_TRANSFERRED = "credit_ledger.credits.transferred"
    BALANCE_LOW = "credit_ledger.balance.low"
    ALLOCATION_CREATED = "credit_ledger.allocation.created"
    ALLOCATION_EXPIRED = "credit_ledger.allocation.expired"
    ALLOCATION_EXPIRING_SOON = "credit_ledger.allocation.expiring_soon"
    CAMPAIGN_DISTRIBUTED = "credit_ledger.campaign.distributed"
    CAMPAIGN_ALLOCATION_DEGRADED = "credit_ledger.campaign.allocation_degraded"


class CreditLedgerStreamConfig:
    """Stream configuration for credit_ledger_service"""
    STREAM_NAME = "credit-ledger-stream"
    SUBJECTS = ["credit_ledger.>"]
    MAX_MESSAGES = 100000
    CONSUMER_PREFIX = "credit_ledger"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Balance Event Models
# ============================================================================


class CreditsAddedEventData(BaseModel):
    """
    Event: credit_ledger.credits.added
    Triggered when credits are purchased, granted or adjusted onto an account
    """

    tenant_id: str = Field(..., description="Tenant ID")
    entity_id: str = Field(..., description="Credited entity")
    amount: int = Field(..., description="Credits added")
    source: str = Field(..., description="payment, plan, campaign, manual or transfer")
    credit_category: str = Field(default="paid", description="paid or free")
    transaction_id: str = Field(..., description="Ledger transaction ID")
    balance_after: int = Field(..., description="Available balance after the credit")
    idempotency_key: Optional[str] = Field(None, description="External reference")
    timestamp: datetime = Field(default_factory=_utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "tenant_id": "tenant_acme",
                "entity_id": "org_acme_hq",
                "amount": 1000,
                "source": "payment",
                "credit_category": "paid",
                "transaction_id": "cred_txn_abc123def456",
                "balance_after": 1500,
                "idempotency_key": "pay_9f8e7d",
                "timestamp": "2025-12-18T10:00:00Z",
            }
        }


class CreditsConsumedEventData(BaseModel):
    """
    Event: credit_ledger.credits.consumed
    Triggered when an operation is charged against an account
    """

    tenant_id: str = Field(..., description="Tenant ID")
    entity_id: str = Field(..., description="Charged entity")
    operation_code: str = Field(..., description="Operation that consumed the credits")
    amount: int = Field(..., description="Credits consumed")
    transaction_id: str = Field(..., description="Ledger transaction ID")
    balance_before: int = Field(..., description="Available balance before consumption")
    balance_after: int = Field(..., description="Available balance after consumption")
    timestamp: datetime = Field(default_factory=_utcnow)


class CreditsTransferredEventData(BaseModel):
    """
    Event: credit_ledger.credits.transferred
    Triggered when credits move between two entities of a tenant
    """

    transfer_id: str = Field(..., description="Transfer ID shared by both ledger rows")
    tenant_id: str = Field(..., description="Tenant ID")
    from_entity_id: str = Field(..., description="Debited entity")
    to_entity_id: str = Field(..., description="Credited entity")
    amount: int = Field(..., description="Credits moved")
    from_balance_after: int = Field(..., description="Sender balance after transfer")
    to_balance_after: int = Field(..., description="Recipient balance after transfer")
    timestamp: datetime = Field(default_factory=_utcnow)


class BalanceLowEventData(BaseModel):
    """
    Event: credit_ledger.balance.low
    Triggered when a consumption leaves the balance at or under an alert threshold
    """

    tenant_id: str = Field(..., description="Tenant ID")
    entity_id: str = Field(..., description="Entity ID")
    balance: int = Field(..., description="Available balance")
    threshold: int = Field(..., description="Threshold that was crossed")
    severity: str = Field(..., description="warning or critical")
    timestamp: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Allocation Event Models
# ============================================================================


class AllocationCreatedEventData(BaseModel):
    """
    Event: credit_ledger.allocation.created
    Triggered when an allocation is created or topped up
    """

    allocation_id: str = Field(..., description="Allocation ID")
    tenant_id: str = Field(..., description="Tenant ID")
    source_entity_id: str = Field(..., description="Debited entity")
    target_application: str = Field(..., description="Consuming application")
    credit_type: str = Field(..., description="Credit type")
    amount: int = Field(..., description="Credits added by this call")
    allocated_credits: int = Field(..., description="Allocation total after this call")
    available_credits: int = Field(..., description="Allocation available after this call")
    created: bool = Field(default=True, description="False when an existing allocation was topped up")
    campaign_id: Optional[str] = Field(None, description="Campaign ID if from campaign")
    expires_at: Optional[datetime] = Field(None, description="Allocation expiry")
    timestamp: datetime = Field(default_factory=_utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "allocation_id": "cred_alloc_abc123def456",
                "tenant_id": "tenant_acme",
                "source_entity_id": "org_acme_hq",
                "target_application": "crm",
                "credit_type": "paid",
                "amount": 300,
                "allocated_credits": 300,
                "available_credits": 300,
                "created": True,
                "campaign_id": None,
                "expires_at": None,
                "timestamp": "2025-12-18T10:00:00Z",
            }
        }


class AllocationExpiredEventData(BaseModel):
    """
    Event: credit_ledger.allocation.expired
    Triggered when the expiry sweep closes an allocation or a free-credit sub-balance
    """

    tenant_id: str = Field(..., description="Tenant ID")
    entity_id: str = Field(..., description="Entity the swept credits belonged to")
    allocation_id: Optional[str] = Field(None, description="Allocation ID; None for a free-credit sweep")
    target_application: Optional[str] = Field(None, description="Consuming application")
    credit_type: str = Field(..., description="Credit type")
    expired_credits: int = Field(..., description="Unused credits swept")
    campaign_id: Optional[str] = Field(None, description="Campaign ID if from campaign")
    reason: str = Field(default="expired", description="expired or a forced-sweep reason")
    timestamp: datetime = Field(default_factory=_utcnow)


class AllocationExpiringSoonEventData(BaseModel):
    """
    Event: credit_ledger.allocation.expiring_soon
    Triggered for allocations expiring inside the warning window
    """

    allocation_id: str = Field(..., description="Allocation ID")
    tenant_id: str = Field(..., description="Tenant ID")
    source_entity_id: str = Field(..., description="Source entity")
    target_application: str = Field(..., description="Consuming application")
    credit_type: str = Field(..., description="Credit type")
    available_credits: int = Field(..., description="Credits that will expire")
    expires_at: datetime = Field(..., description="Expiration timestamp")
    days_until_expiry: int = Field(..., description="Whole days left")
    campaign_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Campaign Event Models
# ============================================================================


class CampaignDistributedEventData(BaseModel):
    """
    Event: credit_ledger.campaign.distributed
    Triggered once every target tenant of a campaign was attempted
    """

    campaign_id: str = Field(..., description="Campaign ID")
    campaign_name: str = Field(..., description="Campaign name")
    credit_type: str = Field(..., description="Credit type granted")
    distributed_count: int = Field(..., description="Tenants that received credits")
    failed_count: int = Field(..., description="Tenants that failed")
    total_distributed: int = Field(..., description="Credits granted")
    failed_tenant_ids: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)


class CampaignAllocationDegradedEventData(BaseModel):
    """
    Event: credit_ledger.campaign.allocation_degraded
    Triggered when an allocation strategy fails and the next one is tried
    """

    campaign_id: str = Field(..., description="Campaign ID")
    tenant_id: str = Field(..., description="Tenant ID")
    failed_strategy: str = Field(..., description="Strategy that failed")
    next_strategy: Optional[str] = Field(None, description="Strategy tried next; None when the chain is exhausted")
    error: str = Field(..., description="Failure description")
    timestamp: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Helper Functions
# ============================================================================


def create_credits_added_event_data(
    tenant_id: str,
    entity_id: str,
    amount: int,
    source: str,
    transaction_id: str,
    balance_after: int,
    credit_category: str = "paid",
    idempotency_key: Optional[str] = None,
) -> CreditsAddedEventData:
    """Create CreditsAddedEventData instance"""
    return CreditsAddedEventData(
        tenant_id=tenant_id,
        entity_id=entity_id,
        amount=amount,
        source=source,
        credit_category=credit_category,
        transaction_id=transaction_id,
        balance_after=balance_after,
        idempotency_key=idempotency_key,
    )


def create_credits_consumed_event_data(
    tenant_id: str,
    entity_id: str,
    operation_code: str,
    amount: int,
    transaction_id: str,
    balance_before: int,
    balance_after: int,
) -> CreditsConsumedEventData:
    """Create CreditsConsumedEventData instance"""
    return CreditsConsumedEventData(
        tenant_id=tenant_id,
        entity_id=entity_id,
        operation_code=operation_code,
        amount=amount,
        transaction_id=transaction_id,
        balance_before=balance_before,
        balance_after=balance_after,
    )


def create_credits_transferred_event_data(
    transfer_id: str,
    tenant_id: str,
    from_entity_id: str,
    to_entity_id: str,
    amount: int,
    from_balance_after: int,
    to_balance_after: int,
) -> CreditsTransferredEventData:
    """Create CreditsTransferredEventData instance"""
    return CreditsTransferredEventData(
        transfer_id=transfer_id,
        tenant_id=tenant_id,
        from_entity_id=from_entity_id,
        to_entity_id=to_entity_id,
        amount=amount,
        from_balance_after=from_balance_after,
        to_balance_after=to_balance_after,
    )


def create_balance_low_event_data(
    tenant_id: str,
    entity_id: str,
    balance: int,
    threshold: int,
    severity: str,
) -> BalanceLowEventData:
    """Create BalanceLowEventData instance"""
    return BalanceLowEventData(
        tenant_id=tenant_id,
        entity_id=entity_id,
        balance=balance,
        threshold=threshold,
        severity=severity,
    )


def create_allocation_created_event_data(
    allocation_id: str,
    tenant_id: str,
    source_entity_id: str,
    target_application: str,
    credit_type: str,
    amount: int,
    allocated_credits: int,
    available_credits: int,
    created: bool = True,
    campaign_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> AllocationCreatedEventData:
    """Create AllocationCreatedEventData instance"""
    return AllocationCreatedEventData(
        allocation_id=allocation_id,
        tenant_id=tenant_id,
        source_entity_id=source_entity_id,
        target_application=target_application,
        credit_type=credit_type,
        amount=amount,
        allocated_credits=allocated_credits,
        available_credits=available_credits,
        created=created,
        campaign_id=campaign_id,
        expires_at=expires_at,
    )


def create_allocation_expired_event_data(
    tenant_id: str,
    entity_id: str,
    credit_type: str,
    expired_credits: int,
    allocation_id: Optional[str] = None,
    target_application: Optional[str] = None,
    campaign_id: Optional[str] = None,
    reason: str = "expired",
) -> AllocationExpiredEventData:
    """Create AllocationExpiredEventData instance"""
    return AllocationExpiredEventData(
        tenant_id=tenant_id,
        entity_id=entity_id,
        allocation_id=allocation_id,
        target_application=target_application,
        credit_type=credit_type,
        expired_credits=expired_credits,
        campaign_id=campaign_id,
        reason=reason,
    )


def create_allocation_expiring_soon_event_data(
    allocation_id: str,
    tenant_id: str,
    source_entity_id: str,
    target_application: str,
    credit_type: str,
    available_credits: int,
    expires_at: datetime,
    days_until_expiry: int,
    campaign_id: Optional[str] = None,
) -> AllocationExpiringSoonEventData:
    """Create AllocationExpiringSoonEventData instance"""
    return AllocationExpiringSoonEventData(
        allocation_id=allocation_id,
        tenant_id=tenant_id,
        source_entity_id=source_entity_id,
        target_application=target_application,
        credit_type=credit_type,
        available_credits=available_credits,
        expires_at=expires_at,
        days_until_expiry=days_until_expiry,
        campaign_id=campaign_id,
    )


def create_campaign_distributed_event_data(
    campaign_id: str,
    campaign_name: str,
    credit_type: str,
    distributed_count: int,
    failed_count: int,
    total_distributed: int,
    failed_tenant_ids: Optional[List[str]] = None,
) -> CampaignDistributedEventData:
    """Create CampaignDistributedEventData instance"""
    return CampaignDistributedEventData(
        campaign_id=campaign_id,
        campaign_name=campaign_name,
        credit_type=credit_type,
        distributed_count=distributed_count,
        failed_count=failed_count,
        total_distributed=total_distributed,
        failed_tenant_ids=failed_tenant_ids or [],
    )


def create_campaign_allocation_degraded_event_data(
    campaign_id: str,
    tenant_id: str,
    failed_strategy: str,
    error: str,
    next_strategy: Optional[str] = None,
) -> CampaignAllocationDegradedEventData:
    """Create CampaignAllocationDegradedEventData instance"""
    return CampaignAllocationDegradedEventData(
        campaign_id=campaign_id,
        tenant_id=tenant_id,
        failed_strategy=failed_strategy,
        next_strategy=next_strategy,
        error=error,
    )
