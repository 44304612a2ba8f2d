"""
Campaign Distribution Engine

Splits a campaign's credit pool across target tenants, grants each share onto
the tenant's primary organization and allocates it through an ordered chain
of allocation strategies. Distribution is claimed with a conditional status
update, so concurrent or repeated calls do the work at most once.
"""

import logging
import uuid
from datetime import datetime, timezone
from fractions import Fraction
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .allocation import AllocationEngine
from .consumption import ConsumptionEngine
from .events.publishers import publish_campaign_allocation_degraded, publish_campaign_distributed
from .models import (
    PRIMARY_ORG_TARGET,
    Campaign,
    CampaignDistributionStatus,
    CampaignResult,
    CampaignStatusEnum,
    CreateCampaignRequest,
    CreditAllocation,
    CreditSourceEnum,
    DistributionMethodEnum,
    DistributionReport,
    ResultReasonEnum,
    TenantDistributionResult,
    TransactionTypeEnum,
)
from .protocols import (
    AllocationStrategyError,
    AllocationStrategyProtocol,
    CampaignNotFoundError,
    CampaignStateError,
    EventBusProtocol,
    ExternalDependencyError,
    LedgerRepositoryProtocol,
    TenantDirectoryProtocol,
)
from .purchase import PurchaseEngine

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ====================
# Share computation
# ====================

def split_equally(total: int, keys: Sequence[str]) -> Dict[str, int]:
    """total // n each; the first total % n keys in ascending order get one more"""
    ordered = sorted(set(keys))
    if not ordered:
        return {}
    base, remainder = divmod(total, len(ordered))
    return {key: base + (1 if index < remainder else 0) for index, key in enumerate(ordered)}


def split_proportionally(total: int, weights: Dict[str, float]) -> Dict[str, int]:
    """Largest-remainder split by weight; ties on the remainder go to the lower key"""
    positive = {key: Fraction(str(weight)) for key, weight in weights.items() if weight and weight > 0}
    if not positive:
        return {}

    weight_sum = sum(positive.values())
    quotas = {key: Fraction(total) * weight / weight_sum for key, weight in positive.items()}
    shares = {key: int(quota) for key, quota in quotas.items()}

    leftover = total - sum(shares.values())
    by_remainder = sorted(quotas, key=lambda key: (-(quotas[key] - shares[key]), key))
    for key in by_remainder[:leftover]:
        shares[key] += 1
    return shares


def compute_shares(campaign: Campaign, tenant_ids: Sequence[str]) -> Dict[str, int]:
    """Per-tenant credits for the campaign's distribution method"""
    method = campaign.distribution_method
    if method == DistributionMethodEnum.EQUAL:
        return split_equally(campaign.total_credits, tenant_ids)
    if method == DistributionMethodEnum.PROPORTIONAL:
        weights = {tenant_id: campaign.distribution_weights.get(tenant_id, 0) for tenant_id in tenant_ids}
        return split_proportionally(campaign.total_credits, weights)
    return {
        tenant_id: campaign.custom_allocations[tenant_id]
        for tenant_id in sorted(set(tenant_ids))
        if campaign.custom_allocations.get(tenant_id, 0) > 0
    }


# ====================
# Allocation strategies
# ====================

class ApplicationAllocationStrategy:
    """Split the tenant's share across the campaign's target applications"""

    name = "application"

    def __init__(self, allocation_engine: AllocationEngine):
        self.allocation_engine = allocation_engine

    def applies_to(self, campaign: Campaign) -> bool:
        return bool(campaign.target_applications)

    async def allocate(
        self,
        campaign: Campaign,
        tenant_id: str,
        entity_id: str,
        amount: int,
        initiated_by: Optional[str] = None,
    ) -> List[CreditAllocation]:
        allocations: List[CreditAllocation] = []
        allocated = 0
        for application, share in split_equally(amount, campaign.target_applications).items():
            if share <= 0:
                continue
            try:
                result = await self.allocation_engine.allocate(
                    tenant_id=tenant_id,
                    source_entity_id=entity_id,
                    target_application=application,
                    amount=share,
                    credit_type=campaign.credit_type,
                    purpose=f"Campaign: {campaign.campaign_name}",
                    campaign_id=campaign.campaign_id,
                    expires_at=campaign.expires_at,
                    initiated_by=initiated_by,
                )
            except Exception as e:
                raise AllocationStrategyError(
                    f"Allocation to {application} failed: {e}",
                    reason="error",
                    allocations=allocations,
                    allocated_amount=allocated,
                ) from e

            if not result.ok:
                raise AllocationStrategyError(
                    f"Allocation to {application} rejected: {result.reason.value if result.reason else result.message}",
                    reason=result.reason.value if result.reason else None,
                    allocations=allocations,
                    allocated_amount=allocated,
                )
            allocations.append(result.allocation)
            allocated += share
        return allocations


class PrimaryOrgAllocationStrategy:
    """Hold the whole share in one allocation on the tenant's primary organization"""

    name = "primary_org"

    def __init__(self, allocation_engine: AllocationEngine):
        self.allocation_engine = allocation_engine

    def applies_to(self, campaign: Campaign) -> bool:
        return True

    async def allocate(
        self,
        campaign: Campaign,
        tenant_id: str,
        entity_id: str,
        amount: int,
        initiated_by: Optional[str] = None,
    ) -> List[CreditAllocation]:
        try:
            result = await self.allocation_engine.allocate(
                tenant_id=tenant_id,
                source_entity_id=entity_id,
                target_application=PRIMARY_ORG_TARGET,
                amount=amount,
                credit_type=campaign.credit_type,
                purpose=f"Campaign: {campaign.campaign_name}",
                campaign_id=campaign.campaign_id,
                expires_at=campaign.expires_at,
                initiated_by=initiated_by,
            )
        except Exception as e:
            raise AllocationStrategyError(f"Primary org allocation failed: {e}", reason="error") from e

        if not result.ok:
            raise AllocationStrategyError(
                f"Primary org allocation rejected: {result.reason.value if result.reason else result.message}",
                reason=result.reason.value if result.reason else None,
            )
        return [result.allocation]


# ====================
# Engine
# ====================

class CampaignDistributionEngine:
    """Campaign creation, distribution and status"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        purchase: PurchaseEngine,
        consumption: ConsumptionEngine,
        allocation_engine: AllocationEngine,
        tenant_directory: Optional[TenantDirectoryProtocol] = None,
        event_bus: Optional[EventBusProtocol] = None,
        strategies: Optional[List[AllocationStrategyProtocol]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.purchase = purchase
        self.consumption = consumption
        self.allocation_engine = allocation_engine
        self.tenant_directory = tenant_directory
        self.event_bus = event_bus
        self.strategies = strategies if strategies is not None else [
            ApplicationAllocationStrategy(allocation_engine),
            PrimaryOrgAllocationStrategy(allocation_engine),
        ]
        self.clock = clock or _utcnow

    # ====================
    # Campaign management
    # ====================

    async def create_campaign(self, request: Any, created_by: Optional[str] = None) -> CampaignResult:
        """
        Create a draft campaign.

        Args:
            request: CreateCampaignRequest or a dict of its fields
            created_by: Operator ID (optional)

        Returns:
            CampaignResult; an invalid request is a validation_error result
        """
        if not isinstance(request, CreateCampaignRequest):
            try:
                request = CreateCampaignRequest.model_validate(request)
            except ValidationError as e:
                logger.info(f"Campaign request rejected: {e.error_count()} validation errors")
                return CampaignResult(
                    ok=False,
                    reason=ResultReasonEnum.VALIDATION_ERROR,
                    message=f"Invalid campaign: {e}",
                )

        campaign_data = request.model_dump(mode="json")
        campaign_data.update({
            "campaign_id": f"camp_{uuid.uuid4().hex[:20]}",
            "expires_at": request.expires_at,
            "status": CampaignStatusEnum.DRAFT.value,
            "created_by": created_by,
        })

        row = await self.repository.create_campaign(campaign_data)
        campaign = Campaign.model_validate(row)
        logger.info(
            f"Created campaign {campaign.campaign_id} '{campaign.campaign_name}': "
            f"{campaign.total_credits} {campaign.credit_type} credits ({campaign.distribution_method.value})"
        )
        return CampaignResult(ok=True, campaign=campaign)

    async def get_campaign(self, campaign_id: str) -> Campaign:
        row = await self.repository.get_campaign(campaign_id)
        if not row:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        return Campaign.model_validate(row)

    async def list_campaigns(self, status: Optional[str] = None) -> List[Campaign]:
        rows = await self.repository.list_campaigns(status)
        return [Campaign.model_validate(row) for row in rows]

    async def get_distribution_status(self, campaign_id: str) -> CampaignDistributionStatus:
        """Campaign fields plus aggregates over its allocations"""
        campaign = await self.get_campaign(campaign_id)
        allocations = [
            CreditAllocation.model_validate(row)
            for row in await self.repository.list_campaign_allocations(campaign_id)
        ]
        return CampaignDistributionStatus(
            campaign=campaign,
            allocation_count=len(allocations),
            tenant_count=len({a.tenant_id for a in allocations}),
            active_allocation_count=sum(1 for a in allocations if a.is_active),
            allocated_credits=sum(a.allocated_credits for a in allocations),
            used_credits=sum(a.used_credits for a in allocations),
            available_credits=sum(a.available_credits for a in allocations),
        )

    # ====================
    # Distribution
    # ====================

    async def distribute(
        self,
        campaign_id: str,
        resume: bool = False,
        initiated_by: Optional[str] = None,
    ) -> DistributionReport:
        """
        Distribute a draft campaign to its target tenants.

        Args:
            campaign_id: Campaign to distribute
            resume: Re-enter a campaign left in distributing; tenants that
                already hold a campaign allocation are skipped
            initiated_by: Operator ID (optional)

        Returns:
            DistributionReport; a campaign already claimed by another run
            returns its stored summary

        Raises:
            CampaignNotFoundError: If the campaign does not exist
            CampaignStateError: If resume is requested for a campaign not in distributing
        """
        current = await self.get_campaign(campaign_id)

        if resume:
            if current.status != CampaignStatusEnum.DISTRIBUTING:
                raise CampaignStateError(
                    f"Campaign {campaign_id} is {current.status.value}; only distributing campaigns can be resumed",
                    status=current.status.value,
                )
            claimed = await self.repository.transition_campaign_status(
                campaign_id,
                [CampaignStatusEnum.DISTRIBUTING.value],
                CampaignStatusEnum.DISTRIBUTING.value,
            )
        else:
            claimed = await self.repository.transition_campaign_status(
                campaign_id,
                [CampaignStatusEnum.DRAFT.value],
                CampaignStatusEnum.DISTRIBUTING.value,
            )

        if not claimed:
            logger.info(f"Campaign {campaign_id} already claimed ({current.status.value}); returning stored summary")
            return await self._stored_summary(campaign_id)

        campaign = Campaign.model_validate(claimed)

        try:
            tenant_ids = await self._resolve_tenants(campaign)
            shares = compute_shares(campaign, tenant_ids)
        except Exception:
            if not resume:
                await self.repository.transition_campaign_status(
                    campaign_id,
                    [CampaignStatusEnum.DISTRIBUTING.value],
                    CampaignStatusEnum.DRAFT.value,
                )
            raise

        already_allocated = set()
        previously_failed = set()
        if resume:
            already_allocated = {
                row["tenant_id"] for row in await self.repository.list_campaign_allocations(campaign_id)
            }
            previously_failed = set(campaign.metadata.get("failed_tenant_ids", []))

        logger.info(f"Distributing campaign {campaign_id} to {len(shares)} tenants")

        results: List[TenantDistributionResult] = []
        failed_tenant_ids = list(previously_failed)
        for tenant_id in sorted(shares):
            amount = shares[tenant_id]
            if tenant_id in already_allocated:
                results.append(TenantDistributionResult(tenant_id=tenant_id, ok=True, amount=amount, skipped=True))
                continue
            if tenant_id in previously_failed:
                results.append(TenantDistributionResult(
                    tenant_id=tenant_id, ok=False, amount=amount, skipped=True, error="failed in an earlier run"
                ))
                continue
            if amount <= 0:
                results.append(TenantDistributionResult(tenant_id=tenant_id, ok=True, amount=0, skipped=True))
                continue

            try:
                result = await self._distribute_to_tenant(campaign, tenant_id, amount, initiated_by)
            except Exception as e:
                logger.error(f"Campaign {campaign_id} failed for tenant {tenant_id}: {e}", exc_info=True)
                result = TenantDistributionResult(tenant_id=tenant_id, ok=False, amount=amount, error=str(e))

            results.append(result)
            if not result.ok:
                failed_tenant_ids.append(tenant_id)
                await self._remember_failure(campaign, failed_tenant_ids)

        return await self._finish(campaign, results, failed_tenant_ids)

    async def _resolve_tenants(self, campaign: Campaign) -> List[str]:
        if campaign.distribution_method == DistributionMethodEnum.CUSTOM and not campaign.target_all_tenants:
            targets = campaign.target_tenant_ids or list(campaign.custom_allocations)
            return sorted(set(targets))
        if not campaign.target_all_tenants:
            return sorted(set(campaign.target_tenant_ids))

        if self.tenant_directory is None:
            raise ExternalDependencyError(
                "Tenant directory is not configured; cannot target all tenants",
                service="tenant_service",
            )
        tenants = await self.tenant_directory.list_active_tenants()
        return sorted(set(tenants))

    async def _distribute_to_tenant(
        self,
        campaign: Campaign,
        tenant_id: str,
        amount: int,
        initiated_by: Optional[str],
    ) -> TenantDistributionResult:
        if self.tenant_directory is None:
            return TenantDistributionResult(
                tenant_id=tenant_id, ok=False, amount=amount, error="tenant directory not configured"
            )
        entity_id = await self.tenant_directory.get_primary_entity(tenant_id)
        if not entity_id:
            return TenantDistributionResult(
                tenant_id=tenant_id, ok=False, amount=amount, error="tenant has no primary organization"
            )

        grant = await self.purchase.add_credits(
            tenant_id=tenant_id,
            entity_id=entity_id,
            amount=amount,
            source=CreditSourceEnum.CAMPAIGN.value,
            idempotency_key=f"campaign:{campaign.campaign_id}:{tenant_id}",
            metadata={"campaign_id": campaign.campaign_id, "credit_type": campaign.credit_type},
            initiated_by=initiated_by,
        )
        if not grant.ok:
            return TenantDistributionResult(
                tenant_id=tenant_id,
                ok=False,
                entity_id=entity_id,
                amount=amount,
                error=f"grant failed: {grant.reason.value if grant.reason else grant.message}",
            )

        chain = [s for s in self.strategies if s.applies_to(campaign)]
        remaining = amount
        allocations: List[CreditAllocation] = []
        used_strategy = None
        last_error = "no allocation strategy applies"

        for index, strategy in enumerate(chain):
            try:
                allocations.extend(await strategy.allocate(campaign, tenant_id, entity_id, remaining, initiated_by))
                remaining = 0
                used_strategy = strategy.name
                break
            except Exception as e:
                partial_amount = getattr(e, "allocated_amount", 0)
                allocations.extend(getattr(e, "allocations", []))
                remaining -= partial_amount
                last_error = str(e)
                next_strategy = chain[index + 1].name if index + 1 < len(chain) else None
                logger.warning(
                    f"Campaign {campaign.campaign_id}: strategy {strategy.name} failed for {tenant_id}: {e}"
                    + (f"; trying {next_strategy}" if next_strategy else "")
                )
                if self.event_bus:
                    await publish_campaign_allocation_degraded(
                        self.event_bus,
                        campaign_id=campaign.campaign_id,
                        tenant_id=tenant_id,
                        failed_strategy=strategy.name,
                        error=str(e),
                        next_strategy=next_strategy,
                    )

        if used_strategy is None:
            await self._reverse_grant(campaign, tenant_id, entity_id, remaining, last_error)
            return TenantDistributionResult(
                tenant_id=tenant_id,
                ok=False,
                entity_id=entity_id,
                amount=amount,
                allocation_ids=[a.allocation_id for a in allocations],
                error=f"all allocation strategies failed: {last_error}",
            )

        return TenantDistributionResult(
            tenant_id=tenant_id,
            ok=True,
            entity_id=entity_id,
            amount=amount,
            allocation_ids=[a.allocation_id for a in allocations],
            strategy=used_strategy,
        )

    async def _reverse_grant(
        self, campaign: Campaign, tenant_id: str, entity_id: str, amount: int, failure: str
    ) -> None:
        """Take back the unallocated part of a tenant's grant"""
        if amount <= 0:
            return
        async with self.repository.transaction() as uow:
            debit = await self.consumption.debit(
                uow,
                tenant_id,
                entity_id,
                amount,
                operation_code=f"campaign_reversal:{campaign.campaign_id}",
                transaction_type=TransactionTypeEnum.ADJUSTMENT,
                metadata={"campaign_id": campaign.campaign_id, "failure": failure},
                initiated_by="system",
            )
        if debit is None:
            await self.repository.create_reconciliation_flag(
                "account",
                f"{tenant_id}/{entity_id}",
                f"Could not reverse campaign {campaign.campaign_id} grant of {amount}",
                {"campaign_id": campaign.campaign_id, "amount": amount, "failure": failure},
            )
            logger.error(f"Could not reverse {amount} campaign credits for {tenant_id}/{entity_id}")
        else:
            logger.warning(f"Reversed {amount} campaign credits for {tenant_id}/{entity_id}")

    async def _remember_failure(self, campaign: Campaign, failed_tenant_ids: List[str]) -> None:
        metadata = dict(campaign.metadata)
        metadata["failed_tenant_ids"] = sorted(set(failed_tenant_ids))
        campaign.metadata = metadata
        await self.repository.update_campaign(campaign.campaign_id, {"metadata": metadata})

    async def _finish(
        self,
        campaign: Campaign,
        results: List[TenantDistributionResult],
        failed_tenant_ids: List[str],
    ) -> DistributionReport:
        distributed_count = sum(1 for r in results if r.ok and r.amount > 0)
        failed_count = sum(1 for r in results if not r.ok)
        total_distributed = await self._allocated_total(campaign.campaign_id)

        await self.repository.transition_campaign_status(
            campaign.campaign_id,
            [CampaignStatusEnum.DISTRIBUTING.value],
            CampaignStatusEnum.DISTRIBUTED.value,
            updates={
                "distributed_count": distributed_count,
                "failed_count": failed_count,
                "distributed_at": self.clock(),
            },
        )
        logger.info(
            f"Campaign {campaign.campaign_id} distributed: {distributed_count} tenants, "
            f"{failed_count} failed, {total_distributed} credits"
        )

        if self.event_bus:
            await publish_campaign_distributed(
                self.event_bus,
                campaign_id=campaign.campaign_id,
                campaign_name=campaign.campaign_name,
                credit_type=campaign.credit_type,
                distributed_count=distributed_count,
                failed_count=failed_count,
                total_distributed=total_distributed,
                failed_tenant_ids=sorted(set(failed_tenant_ids)),
            )

        return DistributionReport(
            campaign_id=campaign.campaign_id,
            status=CampaignStatusEnum.DISTRIBUTED,
            distributed_count=distributed_count,
            failed_count=failed_count,
            total_distributed=total_distributed,
            per_tenant_results=results,
        )

    async def _allocated_total(self, campaign_id: str) -> int:
        rows = await self.repository.list_campaign_allocations(campaign_id)
        return sum(row.get("allocated_credits", 0) for row in rows)

    async def _stored_summary(self, campaign_id: str) -> DistributionReport:
        campaign = await self.get_campaign(campaign_id)
        return DistributionReport(
            campaign_id=campaign_id,
            status=campaign.status,
            distributed_count=campaign.distributed_count,
            failed_count=campaign.failed_count,
            total_distributed=await self._allocated_total(campaign_id),
        )
