"""
Expiry Processor

Sweeps expired allocations and free-credit sub-balances. Every sweep is a
conditional update that re-checks expiry under the row lock, so running the
processor twice (or concurrently) never double-counts.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from core.config.ledger_config import LedgerPolicyConfig

from .balance_store import BalanceStore
from .events.publishers import publish_allocation_expired, publish_allocation_expiring_soon
from .ledger import TransactionLedger
from .models import (
    CampaignStatusEnum,
    CreditCategoryEnum,
    ExpiryReport,
    ExpiryStats,
    ExpiryWindow,
    ExtendExpiryResult,
    ItemFailure,
    LedgerEntry,
    ResultReasonEnum,
    TransactionTypeEnum,
)
from .protocols import (
    CampaignNotFoundError,
    EventBusProtocol,
    LedgerRepositoryProtocol,
)

logger = logging.getLogger(__name__)

FREE_CREDIT_TYPE = CreditCategoryEnum.FREE.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExpiryProcessor:
    """Expiry sweeps, extensions and look-ahead reporting"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        balance_store: BalanceStore,
        ledger: TransactionLedger,
        event_bus: Optional[EventBusProtocol] = None,
        policy: Optional[LedgerPolicyConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.balance_store = balance_store
        self.ledger = ledger
        self.event_bus = event_bus
        self.policy = policy or LedgerPolicyConfig()
        self.clock = clock or _utcnow

    # ====================
    # Sweeps
    # ====================

    async def process_expiries(self, credit_types: Optional[List[str]] = None) -> ExpiryReport:
        """
        Sweep every allocation and free-credit sub-balance whose expiry has passed,
        then mark fully-swept campaigns expired.

        Args:
            credit_types: Restrict the sweep to these credit types ("free" selects
                the free-credit sub-balances)

        Returns:
            ExpiryReport; per-item failures are collected, never raised
        """
        now = self.clock()
        report = ExpiryReport()

        candidates = await self.repository.list_expired_allocations(now, credit_types)
        logger.info(f"Expiry sweep found {len(candidates)} candidate allocations")
        for row in candidates:
            await self._sweep_allocation(row, now, report, force=False, reason="expired")

        if credit_types is None or FREE_CREDIT_TYPE in credit_types:
            accounts = await self.repository.list_expired_free_credit_accounts(now)
            for account in accounts:
                await self._sweep_free_credits(account, now, report, force=False, reason="expired")

        await self._expire_finished_campaigns(now, report)

        logger.info(
            f"Expiry sweep done: processed={report.processed_count} swept={report.swept_credits} "
            f"skipped={report.skipped_count} failures={len(report.failures)}"
        )
        return report

    async def expire_all_for_tenant(self, tenant_id: str, reason: str = "manual") -> ExpiryReport:
        """Forced sweep of every active allocation and free-credit balance of a tenant"""
        now = self.clock()
        report = ExpiryReport()

        for row in await self.repository.list_active_allocations(tenant_id):
            await self._sweep_allocation(row, now, report, force=True, reason=reason)

        for account in await self.repository.list_free_credit_accounts(tenant_id):
            await self._sweep_free_credits(account, now, report, force=True, reason=reason)

        logger.warning(
            f"Forced expiry for tenant {tenant_id} ({reason}): "
            f"{report.processed_count} swept, {report.swept_credits} credits"
        )
        return report

    async def _sweep_allocation(
        self, row: Dict[str, Any], now: datetime, report: ExpiryReport, force: bool, reason: str
    ) -> None:
        allocation_id = row["allocation_id"]
        try:
            async with self.repository.transaction() as uow:
                updated = await uow.expire_allocation(allocation_id, now, force=force)
                if updated:
                    swept = updated.get("previous_available", 0)
                    await self.ledger.record_allocation_expiry(uow, updated, reason)
        except Exception as e:
            logger.error(f"Failed to expire allocation {allocation_id}: {e}", exc_info=True)
            report.failures.append(ItemFailure(id=allocation_id, error=str(e)))
            return

        if not updated:
            # Already inactive or extended since the scan
            report.skipped_count += 1
            return

        report.processed_count += 1
        report.swept_credits += swept
        report.swept_ids.append(allocation_id)

        if self.event_bus:
            await publish_allocation_expired(
                self.event_bus,
                tenant_id=updated["tenant_id"],
                entity_id=updated["source_entity_id"],
                credit_type=updated["credit_type"],
                expired_credits=swept,
                allocation_id=allocation_id,
                target_application=updated.get("target_application"),
                campaign_id=updated.get("campaign_id"),
                reason=reason,
            )

    async def _sweep_free_credits(
        self, account: Dict[str, Any], now: datetime, report: ExpiryReport, force: bool, reason: str
    ) -> None:
        tenant_id = account["tenant_id"]
        entity_id = account["entity_id"]
        item_id = f"free:{tenant_id}/{entity_id}"
        try:
            async with self.repository.transaction() as uow:
                change = await self.balance_store.sweep_free_credits(uow, tenant_id, entity_id, now, force=force)
                if change is not None and change.delta < 0:
                    await self.ledger.record(uow, LedgerEntry(
                        tenant_id=tenant_id,
                        entity_id=entity_id,
                        transaction_type=TransactionTypeEnum.EXPIRY,
                        amount=change.delta,
                        previous_balance=change.previous_balance,
                        new_balance=change.new_balance,
                        operation_code="expiry:free_credits",
                        initiated_by="system",
                        metadata={"reason": reason},
                    ))
        except Exception as e:
            logger.error(f"Failed to sweep free credits of {tenant_id}/{entity_id}: {e}", exc_info=True)
            report.failures.append(ItemFailure(id=item_id, error=str(e)))
            return

        if change is None:
            report.skipped_count += 1
            return

        swept = -change.delta
        report.processed_count += 1
        report.swept_credits += swept
        report.swept_ids.append(item_id)

        if self.event_bus:
            await publish_allocation_expired(
                self.event_bus,
                tenant_id=tenant_id,
                entity_id=entity_id,
                credit_type=FREE_CREDIT_TYPE,
                expired_credits=swept,
                reason=reason,
            )

    async def _expire_finished_campaigns(self, now: datetime, report: ExpiryReport) -> None:
        try:
            campaigns = await self.repository.list_campaigns_ready_to_expire(now)
        except Exception as e:
            logger.error(f"Failed to list campaigns ready to expire: {e}", exc_info=True)
            report.failures.append(ItemFailure(id="campaigns", error=str(e)))
            return

        for campaign in campaigns:
            campaign_id = campaign["campaign_id"]
            try:
                updated = await self.repository.transition_campaign_status(
                    campaign_id,
                    [CampaignStatusEnum.DISTRIBUTED.value],
                    CampaignStatusEnum.EXPIRED.value,
                )
            except Exception as e:
                logger.error(f"Failed to expire campaign {campaign_id}: {e}", exc_info=True)
                report.failures.append(ItemFailure(id=campaign_id, error=str(e)))
                continue
            if updated:
                report.campaigns_expired.append(campaign_id)
                logger.info(f"Campaign {campaign_id} expired")

    # ====================
    # Extension
    # ====================

    async def extend_expiry(
        self,
        campaign_id: str,
        additional_days: int,
        tenant_id: Optional[str] = None,
    ) -> ExtendExpiryResult:
        """
        Push expires_at forward on a campaign's active allocations.
        Inactive allocations are never resurrected. Without tenant_id the
        campaign's own expires_at moves too.

        Returns:
            ExtendExpiryResult; a non-positive additional_days is a validation_error result

        Raises:
            CampaignNotFoundError: If the campaign does not exist
        """
        if not isinstance(additional_days, int) or isinstance(additional_days, bool) or additional_days <= 0:
            return ExtendExpiryResult(
                ok=False,
                reason=ResultReasonEnum.VALIDATION_ERROR,
                message=f"additional_days must be a positive integer, got {additional_days!r}",
                campaign_id=campaign_id,
                tenant_id=tenant_id,
            )

        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")

        delta = timedelta(days=additional_days)
        extended = await self.repository.extend_allocations(campaign_id, delta, tenant_id=tenant_id)

        campaign_expires_at = campaign.get("expires_at")
        if tenant_id is None and campaign_expires_at is not None:
            campaign_expires_at = campaign_expires_at + delta
            await self.repository.update_campaign(campaign_id, {"expires_at": campaign_expires_at})

        logger.info(
            f"Extended {extended} allocations of campaign {campaign_id} by {additional_days} days"
            + (f" for tenant {tenant_id}" if tenant_id else "")
        )
        return ExtendExpiryResult(
            ok=True,
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            additional_days=additional_days,
            extended_count=extended,
            campaign_expires_at=campaign_expires_at,
        )

    # ====================
    # Look-ahead
    # ====================

    async def warn_expiring(self, days_ahead: Optional[int] = None) -> int:
        """Publish expiring_soon for each active allocation expiring within days_ahead"""
        days = days_ahead if days_ahead is not None else self.policy.expiry_warning_days
        now = self.clock()
        rows = await self.repository.list_expiring_allocations(now, now + timedelta(days=days))

        if self.event_bus:
            for row in rows:
                await publish_allocation_expiring_soon(
                    self.event_bus,
                    allocation_id=row["allocation_id"],
                    tenant_id=row["tenant_id"],
                    source_entity_id=row["source_entity_id"],
                    target_application=row["target_application"],
                    credit_type=row["credit_type"],
                    available_credits=row.get("available_credits", 0),
                    expires_at=row["expires_at"],
                    days_until_expiry=max((row["expires_at"] - now).days, 0),
                    campaign_id=row.get("campaign_id"),
                )

        logger.info(f"{len(rows)} allocations expire within {days} days")
        return len(rows)

    async def get_expiry_stats(self, tenant_id: str, entity_id: Optional[str] = None) -> ExpiryStats:
        """Expiring allocations and unused credits over the next 7 and 30 days"""
        now = self.clock()
        windows = {}
        for days in (7, 30):
            rows = await self.repository.list_expiring_allocations(
                now, now + timedelta(days=days), tenant_id=tenant_id, entity_id=entity_id
            )
            windows[days] = ExpiryWindow(
                days=days,
                expiring_count=len(rows),
                unused_credits=sum(row.get("available_credits", 0) for row in rows),
            )

        horizon = now + timedelta(days=30)
        free_expiring = 0
        for account in await self.repository.list_free_credit_accounts(tenant_id):
            if entity_id and account["entity_id"] != entity_id:
                continue
            expires_at = account.get("free_credits_expires_at")
            if expires_at is not None and expires_at <= horizon:
                free_expiring += account.get("free_credits", 0)

        return ExpiryStats(
            tenant_id=tenant_id,
            entity_id=entity_id,
            next_7_days=windows[7],
            next_30_days=windows[30],
            free_credits_expiring=free_expiring,
        )
