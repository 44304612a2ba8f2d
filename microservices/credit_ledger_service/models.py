"""
Credit Ledger Service Data Models

Credit accounts, ledger transactions, application allocations and campaigns,
plus the typed result envelopes every engine operation returns.
All amounts are whole credits.
"""

import math
from enum import Enum
from typing import Annotated, Optional, Dict, Any, List, Literal, Union
from datetime import datetime, timezone
from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


# ====================
# Enumerations
# ====================

class TransactionTypeEnum(str, Enum):
    """Valid ledger transaction types"""
    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    ALLOCATION = "allocation"
    EXPIRY = "expiry"
    ADJUSTMENT = "adjustment"


class LedgerScopeEnum(str, Enum):
    """Which balance a ledger row describes"""
    ACCOUNT = "account"
    ALLOCATION = "allocation"


class CreditSourceEnum(str, Enum):
    """Where added credits come from"""
    PAYMENT = "payment"
    PLAN = "plan"
    CAMPAIGN = "campaign"
    MANUAL = "manual"
    TRANSFER = "transfer"


class CreditCategoryEnum(str, Enum):
    """Account sub-balance categories"""
    PAID = "paid"
    FREE = "free"


class CreditTypeEnum(str, Enum):
    """Valid allocation credit types"""
    PAID = "paid"
    FREE = "free"
    PLAN = "plan"
    PROMOTIONAL = "promotional"
    SEASONAL = "seasonal"
    FREE_DISTRIBUTION = "free_distribution"
    HOLIDAY = "holiday"
    BONUS = "bonus"
    EVENT = "event"


class DistributionMethodEnum(str, Enum):
    """How a campaign pool is split across tenants"""
    EQUAL = "equal"
    PROPORTIONAL = "proportional"
    CUSTOM = "custom"


class CampaignStatusEnum(str, Enum):
    """Campaign lifecycle states"""
    DRAFT = "draft"
    DISTRIBUTING = "distributing"
    DISTRIBUTED = "distributed"
    EXPIRED = "expired"


class BalanceStatusEnum(str, Enum):
    """Balance health reported by get_balance"""
    NO_CREDITS = "no_credits"
    ACTIVE = "active"
    LOW_BALANCE = "low_balance"
    CRITICAL_BALANCE = "critical_balance"
    INACTIVE = "inactive"


class OperationCostSourceEnum(str, Enum):
    """Which row priced an operation"""
    TENANT = "tenant"
    GLOBAL = "global"
    DEFAULT = "default"


class ResultReasonEnum(str, Enum):
    """Failure reasons carried by result envelopes"""
    INVALID_AMOUNT = "invalid_amount"
    VALIDATION_ERROR = "validation_error"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    ACCOUNT_INACTIVE = "account_inactive"
    PAYMENT_NOT_CONFIRMED = "payment_not_confirmed"
    TRANSFER_FAILED = "transfer_failed"
    ALLOCATION_INACTIVE = "allocation_inactive"
    ALLOCATION_EXPIRED = "allocation_expired"


# Credit types an operator may run a campaign with
CAMPAIGN_CREDIT_TYPES = {
    CreditTypeEnum.FREE_DISTRIBUTION.value,
    CreditTypeEnum.PROMOTIONAL.value,
    CreditTypeEnum.SEASONAL.value,
    CreditTypeEnum.HOLIDAY.value,
    CreditTypeEnum.BONUS.value,
    CreditTypeEnum.EVENT.value,
}

# Allocation target used when a grant is held by the tenant's primary organization
PRIMARY_ORG_TARGET = "primary_org"


# ====================
# Core Data Models
# ====================

class CreditAccount(BaseModel):
    """
    Credit account - one per (tenant, entity).
    Created lazily on first credit or allocation, never hard-deleted.
    free_credits is a sub-balance of available_credits with its own expiry.
    """
    tenant_id: str = Field(..., min_length=1, description="Tenant ID")
    entity_id: str = Field(..., min_length=1, description="Entity ID (organization, location, department, team)")

    available_credits: int = Field(default=0, ge=0, description="Spendable credits")
    reserved_credits: int = Field(default=0, ge=0, description="Credits held aside")
    free_credits: int = Field(default=0, ge=0, description="Free-credit portion of available_credits")
    free_credits_expires_at: Optional[datetime] = Field(None, description="When the free-credit portion expires")

    is_active: bool = Field(default=True, description="Soft-deactivation flag")

    created_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    @property
    def paid_credits(self) -> int:
        return self.available_credits - self.free_credits


class BalanceChange(BaseModel):
    """Pre/post balance captured by a single atomic storage update"""
    previous_balance: int
    new_balance: int

    @property
    def delta(self) -> int:
        return self.new_balance - self.previous_balance


class CreditTransaction(BaseModel):
    """
    Ledger row - append-only, never mutated.

    Account-scope rows move the account's available balance. Allocation-scope rows
    move an allocation's available credits and leave the account balance untouched.
    """
    transaction_id: str = Field(..., min_length=1, description="Unique transaction identifier")

    tenant_id: str = Field(..., min_length=1, description="Tenant ID")
    entity_id: str = Field(..., min_length=1, description="Entity ID")

    transaction_type: TransactionTypeEnum = Field(..., description="Type of transaction")
    amount: int = Field(..., description="Signed amount: positive credit, negative debit")
    previous_balance: int = Field(..., ge=0, description="Balance before the mutation")
    new_balance: int = Field(..., ge=0, description="Balance after the mutation")

    operation_code: str = Field(..., min_length=1, max_length=255, description="What caused the mutation")
    initiated_by: Optional[str] = Field(None, description="Actor ID or 'system'")

    ledger_scope: LedgerScopeEnum = Field(default=LedgerScopeEnum.ACCOUNT)
    allocation_id: Optional[str] = Field(None, description="Allocation the row belongs to")
    idempotency_key: Optional[str] = Field(None, description="External reference for credit additions")

    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class LedgerEntry(BaseModel):
    """Ledger row to be written; the ledger assigns transaction_id and created_at"""
    tenant_id: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    transaction_type: TransactionTypeEnum
    amount: int
    previous_balance: int = Field(..., ge=0)
    new_balance: int = Field(..., ge=0)
    operation_code: str = Field(..., min_length=1, max_length=255)
    initiated_by: Optional[str] = None
    ledger_scope: LedgerScopeEnum = LedgerScopeEnum.ACCOUNT
    allocation_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CreditAllocation(BaseModel):
    """
    Application allocation - a sub-grant earmarked from an entity's balance.
    used_credits + available_credits == allocated_credits until an expiry sweep
    sets available_credits to 0 and is_active to False.
    """
    allocation_id: str = Field(..., min_length=1, description="Unique allocation identifier")

    tenant_id: str = Field(..., min_length=1, description="Tenant ID")
    source_entity_id: str = Field(..., min_length=1, description="Entity the credits were taken from")
    target_application: str = Field(..., min_length=1, description="Consuming application")
    credit_type: str = Field(..., description="Credit type")

    allocated_credits: int = Field(..., ge=0, description="Total ever allocated to this row")
    used_credits: int = Field(default=0, ge=0, description="Credits consumed from this row")
    available_credits: int = Field(..., ge=0, description="Credits still spendable")

    campaign_id: Optional[str] = Field(None, description="Campaign that created this allocation")
    purpose: Optional[str] = Field(None, max_length=500, description="Allocation purpose")
    expires_at: Optional[datetime] = Field(None, description="Expiration datetime")
    expired_at: Optional[datetime] = Field(None, description="When the expiry sweep closed the row")
    auto_replenish: bool = Field(default=False)
    is_active: bool = Field(default=True)

    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_balanced(self) -> bool:
        if not self.is_active:
            return self.available_credits == 0
        return self.used_credits + self.available_credits == self.allocated_credits


class Campaign(BaseModel):
    """
    Campaign - operator-defined bulk distribution of a credit pool across tenants.
    """
    campaign_id: str = Field(..., min_length=1, description="Unique campaign identifier")
    campaign_name: str = Field(..., min_length=1, max_length=255, description="Campaign name")
    description: Optional[str] = Field(None, max_length=1000)

    credit_type: str = Field(..., description="Credit type granted")
    total_credits: int = Field(..., gt=0, description="Pool size")
    distribution_method: DistributionMethodEnum = Field(default=DistributionMethodEnum.EQUAL)

    # Targets
    target_tenant_ids: List[str] = Field(default_factory=list)
    target_all_tenants: bool = Field(default=False)
    target_applications: List[str] = Field(default_factory=list, description="Empty means primary org allocation")
    distribution_weights: Dict[str, float] = Field(default_factory=dict, description="Proportional weights per tenant")
    custom_allocations: Dict[str, int] = Field(default_factory=dict, description="Explicit credits per tenant")

    expires_at: Optional[datetime] = Field(None, description="Expiry stamped on created allocations")
    status: CampaignStatusEnum = Field(default=CampaignStatusEnum.DRAFT)

    # Distribution outcome
    distributed_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    distributed_at: Optional[datetime] = None

    created_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OperationCost(BaseModel):
    """Credits charged per unit of an operation code"""
    operation_code: str = Field(..., min_length=1, max_length=255)
    credit_cost: int = Field(..., gt=0)
    unit: str = Field(default="operation", max_length=32)
    tenant_id: Optional[str] = Field(None, description="None for the global price")
    source: OperationCostSourceEnum = Field(default=OperationCostSourceEnum.GLOBAL)
    updated_at: Optional[datetime] = None


# ====================
# Allocation Metadata Variants
# ====================

class CrmAllocationMetadata(BaseModel):
    """Metadata attached to allocations for the CRM application"""
    application: Literal["crm"] = "crm"
    pipeline_id: Optional[str] = None
    lead_quota: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=500)


class HrAllocationMetadata(BaseModel):
    """Metadata attached to allocations for the HR application"""
    application: Literal["hr"] = "hr"
    department_id: Optional[str] = None
    headcount: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=500)


class OperationsAllocationMetadata(BaseModel):
    """Metadata attached to allocations for the operations application"""
    application: Literal["operations"] = "operations"
    location_id: Optional[str] = None
    cost_center: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)


class GenericAllocationMetadata(BaseModel):
    """Fallback metadata for applications without a dedicated variant"""
    application: Literal["generic"] = "generic"
    attributes: Dict[str, str] = Field(default_factory=dict)
    notes: Optional[str] = Field(None, max_length=500)


AllocationMetadata = Annotated[
    Union[
        CrmAllocationMetadata,
        HrAllocationMetadata,
        OperationsAllocationMetadata,
        GenericAllocationMetadata,
    ],
    Field(discriminator="application"),
]

_allocation_metadata_adapter = TypeAdapter(AllocationMetadata)
_METADATA_APPLICATIONS = {"crm", "hr", "operations", "generic"}


def parse_allocation_metadata(
    raw: Optional[Union[Dict[str, Any], BaseModel]],
    target_application: Optional[str] = None,
) -> Optional[BaseModel]:
    """
    Parse caller-supplied metadata into its tagged variant.

    A dict without an "application" tag takes the target application's variant
    when one exists, otherwise the generic variant. Raises ValueError on
    malformed input.
    """
    if raw is None:
        return None
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if not isinstance(raw, dict):
        raise ValueError("metadata must be an object")

    data = dict(raw)
    if "application" not in data:
        data["application"] = target_application if target_application in _METADATA_APPLICATIONS else "generic"
    if data["application"] == "generic" and "attributes" not in data:
        extra = {k: v for k, v in data.items() if k not in ("application", "notes")}
        data = {"application": "generic", "notes": data.get("notes"), "attributes": {k: str(v) for k, v in extra.items()}}

    try:
        return _allocation_metadata_adapter.validate_python(data)
    except Exception as e:
        raise ValueError(f"invalid allocation metadata: {e}") from e


# ====================
# Request Models
# ====================

class CreateCampaignRequest(BaseModel):
    """Request to create a new campaign"""
    campaign_name: str = Field(..., min_length=1, max_length=255, description="Campaign name")
    description: Optional[str] = Field(None, max_length=1000)
    credit_type: str = Field(..., description="Credit type to grant")
    total_credits: int = Field(..., gt=0, description="Pool size")
    distribution_method: DistributionMethodEnum = Field(default=DistributionMethodEnum.EQUAL)
    target_tenant_ids: List[str] = Field(default_factory=list)
    target_all_tenants: bool = Field(default=False)
    target_applications: List[str] = Field(default_factory=list)
    distribution_weights: Dict[str, float] = Field(default_factory=dict)
    custom_allocations: Dict[str, int] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('campaign_name')
    @classmethod
    def validate_campaign_name(cls, v):
        if not v or not v.strip():
            raise ValueError("campaign_name cannot be empty")
        return v.strip()

    @field_validator('credit_type')
    @classmethod
    def validate_credit_type(cls, v):
        if v not in CAMPAIGN_CREDIT_TYPES:
            raise ValueError(f"credit_type must be one of: {sorted(CAMPAIGN_CREDIT_TYPES)}")
        return v

    @field_validator('target_tenant_ids', 'target_applications')
    @classmethod
    def validate_unique_ids(cls, v):
        cleaned = [item.strip() for item in v if item and item.strip()]
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("duplicate ids are not allowed")
        return cleaned

    @field_validator('expires_at')
    @classmethod
    def validate_expires_at(cls, v):
        if v is None:
            return v
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("expires_at must be in the future")
        return v

    @field_validator('distribution_weights')
    @classmethod
    def validate_weights(cls, v):
        non_finite = sorted(key for key, weight in v.items() if not math.isfinite(weight))
        if non_finite:
            raise ValueError(f"distribution weights must be finite numbers: {non_finite}")
        return v

    @model_validator(mode='after')
    def validate_targets(self):
        if not self.target_all_tenants and not self.target_tenant_ids:
            if self.distribution_method == DistributionMethodEnum.CUSTOM and self.custom_allocations:
                self.target_tenant_ids = sorted(self.custom_allocations)
            else:
                raise ValueError("either target_tenant_ids or target_all_tenants is required")

        if self.distribution_method == DistributionMethodEnum.PROPORTIONAL:
            if self.target_all_tenants and not self.distribution_weights:
                raise ValueError("proportional distribution requires distribution_weights")
            targets = self.target_tenant_ids or list(self.distribution_weights)
            missing = [t for t in targets if self.distribution_weights.get(t, 0) <= 0]
            if missing:
                raise ValueError(f"proportional distribution requires a positive weight for: {missing}")

        if self.distribution_method == DistributionMethodEnum.CUSTOM:
            if not self.custom_allocations:
                raise ValueError("custom distribution requires custom_allocations")
            if any(amount <= 0 for amount in self.custom_allocations.values()):
                raise ValueError("custom allocations must be positive")
            if sum(self.custom_allocations.values()) > self.total_credits:
                raise ValueError("custom allocations exceed total_credits")
            if self.target_tenant_ids:
                unknown = set(self.custom_allocations) - set(self.target_tenant_ids)
                if unknown:
                    raise ValueError(f"custom allocations reference non-target tenants: {sorted(unknown)}")
        return self


class SetOperationCostRequest(BaseModel):
    """Price an operation globally, or for one tenant when tenant_id is set"""
    operation_code: str = Field(..., min_length=1, max_length=255)
    credit_cost: int = Field(..., gt=0)
    unit: str = Field(default="operation", min_length=1, max_length=32)
    tenant_id: Optional[str] = None

    @field_validator('operation_code')
    @classmethod
    def validate_operation_code(cls, v):
        if not v.strip():
            raise ValueError("operation_code cannot be empty")
        return v.strip()


class TransactionQuery(BaseModel):
    """Filters for ledger history"""
    transaction_type: Optional[TransactionTypeEnum] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


# ====================
# Balance Snapshot
# ====================

class BalanceAlert(BaseModel):
    """Alert attached to a balance snapshot"""
    alert_type: str = Field(..., description="critical_balance, low_balance or expiry_warning")
    severity: str = Field(..., description="warning or critical")
    message: str
    threshold: Optional[int] = None
    days_until_expiry: Optional[int] = None


class BalanceSnapshot(BaseModel):
    """Point-in-time view of an account; zero-valued when the account does not exist"""
    tenant_id: str
    entity_id: str
    available_credits: int = 0
    reserved_credits: int = 0
    free_credits: int = 0
    paid_credits: int = 0
    total_credits: int = 0
    free_credits_expires_at: Optional[datetime] = None
    is_active: bool = True
    has_account: bool = False
    status: BalanceStatusEnum = BalanceStatusEnum.NO_CREDITS
    alerts: List[BalanceAlert] = Field(default_factory=list)
    last_updated_at: Optional[datetime] = None


# ====================
# Result Envelopes
# ====================

class _OperationResult(BaseModel):
    ok: bool
    reason: Optional[ResultReasonEnum] = None
    message: Optional[str] = None

    def raise_for_reason(self) -> None:
        """Convert a failed result into the matching exception"""
        if self.ok:
            return
        from .protocols import CreditValidationError, InsufficientBalanceError, CreditLedgerError

        if self.reason == ResultReasonEnum.INSUFFICIENT_CREDITS:
            raise InsufficientBalanceError(
                self.message or "Insufficient credits",
                current_balance=getattr(self, "current_balance", None),
                shortfall=getattr(self, "shortfall", None),
            )
        if self.reason in (ResultReasonEnum.INVALID_AMOUNT, ResultReasonEnum.VALIDATION_ERROR):
            raise CreditValidationError(self.message or "Invalid request")
        raise CreditLedgerError(self.message or str(self.reason))


class ConsumeResult(_OperationResult):
    """Outcome of a consumption"""
    balance: Optional[int] = Field(None, description="New balance on success")
    current_balance: Optional[int] = Field(None, description="Balance at rejection time")
    shortfall: Optional[int] = None
    credit_cost: Optional[int] = Field(None, description="Credits charged, or that would have been")
    transaction_id: Optional[str] = None


class AddCreditsResult(_OperationResult):
    """Outcome of a credit addition"""
    balance: Optional[int] = None
    transaction_id: Optional[str] = None
    replayed: bool = Field(default=False, description="True when an applied idempotency key was replayed")


class TransferResult(_OperationResult):
    """Outcome of a transfer"""
    transfer_id: Optional[str] = None
    from_balance: Optional[int] = None
    to_balance: Optional[int] = None
    current_balance: Optional[int] = None
    shortfall: Optional[int] = None
    compensated: bool = False


class AllocationResult(_OperationResult):
    """Outcome of an allocation"""
    allocation: Optional[CreditAllocation] = None
    source_balance: Optional[int] = None
    current_balance: Optional[int] = None
    shortfall: Optional[int] = None
    transaction_id: Optional[str] = None


class CampaignResult(_OperationResult):
    """Outcome of creating a campaign"""
    campaign: Optional[Campaign] = None


class TransactionHistoryResult(_OperationResult):
    """Outcome of a ledger history query"""
    transactions: List[CreditTransaction] = Field(default_factory=list)


class OperationCostResult(_OperationResult):
    """Outcome of pricing an operation"""
    cost: Optional[OperationCost] = None


class AllocationConsumeResult(_OperationResult):
    """Outcome of consuming from an allocation"""
    allocation_id: str
    available_credits: Optional[int] = None
    used_credits: Optional[int] = None
    shortfall: Optional[int] = None
    transaction_id: Optional[str] = None


# ====================
# Batch / Report Models
# ====================

class ItemFailure(BaseModel):
    """One failed item in a batch operation"""
    id: str
    error: str


class ExpiryReport(BaseModel):
    """Outcome of an expiry sweep"""
    processed_count: int = 0
    swept_credits: int = 0
    skipped_count: int = 0
    swept_ids: List[str] = Field(default_factory=list)
    campaigns_expired: List[str] = Field(default_factory=list)
    failures: List[ItemFailure] = Field(default_factory=list)


class ExtendExpiryResult(_OperationResult):
    """Outcome of an expiry extension"""
    campaign_id: str
    tenant_id: Optional[str] = None
    additional_days: Optional[int] = None
    extended_count: int = 0
    campaign_expires_at: Optional[datetime] = None


class ExpiryWindow(BaseModel):
    """Expiring allocations inside one look-ahead window"""
    days: int
    expiring_count: int = 0
    unused_credits: int = 0


class ExpiryStats(BaseModel):
    """Upcoming expiry summary for a tenant (optionally one entity)"""
    tenant_id: str
    entity_id: Optional[str] = None
    next_7_days: ExpiryWindow
    next_30_days: ExpiryWindow
    free_credits_expiring: int = 0


class TenantDistributionResult(BaseModel):
    """Per-tenant outcome of a campaign distribution"""
    tenant_id: str
    ok: bool
    entity_id: Optional[str] = None
    amount: int = 0
    allocation_ids: List[str] = Field(default_factory=list)
    strategy: Optional[str] = None
    skipped: bool = False
    error: Optional[str] = None


class DistributionReport(BaseModel):
    """Outcome of distributing a campaign"""
    campaign_id: str
    status: CampaignStatusEnum
    distributed_count: int = 0
    failed_count: int = 0
    total_distributed: int = 0
    per_tenant_results: List[TenantDistributionResult] = Field(default_factory=list)


class CampaignDistributionStatus(BaseModel):
    """Campaign state plus aggregates over its allocations"""
    campaign: Campaign
    allocation_count: int = 0
    tenant_count: int = 0
    active_allocation_count: int = 0
    allocated_credits: int = 0
    used_credits: int = 0
    available_credits: int = 0


class ReconciliationReport(BaseModel):
    """Outcome of a reconciliation check"""
    record_type: str
    record_id: str
    consistent: bool
    expected: int
    actual: int
    details: Dict[str, Any] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
