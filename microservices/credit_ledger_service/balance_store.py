"""
Balance Store

Owns the per-(tenant, entity) account balance. Reads go straight to the
repository; every mutation runs on a caller-supplied unit of work so the
matching ledger row commits with it.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from core.config.ledger_config import LedgerPolicyConfig

from .models import (
    BalanceAlert,
    BalanceChange,
    BalanceSnapshot,
    BalanceStatusEnum,
    CreditAccount,
)
from .protocols import (
    AccountNotFoundError,
    LedgerRepositoryProtocol,
    LedgerUnitOfWorkProtocol,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BalanceStore:
    """Account balances: snapshots, lazy creation and atomic conditional mutations"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        policy: Optional[LedgerPolicyConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.policy = policy or LedgerPolicyConfig()
        self.clock = clock or _utcnow

    # ====================
    # Reads
    # ====================

    async def get_balance(self, tenant_id: str, entity_id: str) -> BalanceSnapshot:
        """
        Get the balance snapshot for an entity.

        Never raises for a missing account: a zero snapshot with
        status no_credits and has_account False is returned instead.
        """
        account = await self.repository.get_account(tenant_id, entity_id)
        if not account:
            return BalanceSnapshot(
                tenant_id=tenant_id,
                entity_id=entity_id,
                status=BalanceStatusEnum.NO_CREDITS,
                has_account=False,
            )

        available = account.get("available_credits", 0)
        reserved = account.get("reserved_credits", 0)
        free = account.get("free_credits", 0)
        alerts = self._build_alerts(available, free, account.get("free_credits_expires_at"))

        if not account.get("is_active", True):
            status = BalanceStatusEnum.INACTIVE
        elif available <= self.policy.critical_balance_threshold:
            status = BalanceStatusEnum.CRITICAL_BALANCE
        elif available <= self.policy.low_balance_threshold:
            status = BalanceStatusEnum.LOW_BALANCE
        else:
            status = BalanceStatusEnum.ACTIVE

        return BalanceSnapshot(
            tenant_id=tenant_id,
            entity_id=entity_id,
            available_credits=available,
            reserved_credits=reserved,
            free_credits=free,
            paid_credits=available - free,
            total_credits=available + reserved,
            free_credits_expires_at=account.get("free_credits_expires_at"),
            is_active=account.get("is_active", True),
            has_account=True,
            status=status,
            alerts=alerts,
            last_updated_at=account.get("last_updated_at"),
        )

    def _build_alerts(self, available: int, free: int, free_expires_at: Optional[datetime]):
        alerts = []
        critical = self.policy.critical_balance_threshold
        low = self.policy.low_balance_threshold

        if available <= critical:
            alerts.append(BalanceAlert(
                alert_type="critical_balance",
                severity="critical",
                message=f"Only {available} credits remaining",
                threshold=critical,
            ))
        elif available <= low:
            alerts.append(BalanceAlert(
                alert_type="low_balance",
                severity="warning",
                message=f"{available} credits remaining",
                threshold=low,
            ))

        if free > 0 and free_expires_at is not None:
            days_left = (free_expires_at - self.clock()).days
            if 0 < days_left <= self.policy.free_credit_warning_days:
                alerts.append(BalanceAlert(
                    alert_type="expiry_warning",
                    severity="critical" if days_left <= self.policy.expiry_warning_days else "warning",
                    message=f"{free} free credits expire in {days_left} days",
                    days_until_expiry=days_left,
                ))

        return alerts

    # ====================
    # Account lifecycle
    # ====================

    async def ensure_account(
        self,
        tenant_id: str,
        entity_id: str,
        uow: Optional[LedgerUnitOfWorkProtocol] = None,
    ) -> CreditAccount:
        """Create the account if absent; idempotent"""
        if uow is not None:
            row = await uow.ensure_account(tenant_id, entity_id)
        else:
            async with self.repository.transaction() as own_uow:
                row = await own_uow.ensure_account(tenant_id, entity_id)
        return CreditAccount.model_validate(row)

    async def deactivate_account(self, tenant_id: str, entity_id: str) -> CreditAccount:
        """
        Soft-deactivate an account. Later debits and credits against it fail.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        row = await self.repository.set_account_active(tenant_id, entity_id, False)
        if not row:
            raise AccountNotFoundError(f"Credit account not found: {tenant_id}/{entity_id}")
        logger.info(f"Deactivated credit account {tenant_id}/{entity_id}")
        return CreditAccount.model_validate(row)

    # ====================
    # Atomic mutations (inside a unit of work)
    # ====================

    async def debit(
        self, uow: LedgerUnitOfWorkProtocol, tenant_id: str, entity_id: str, amount: int
    ) -> Optional[BalanceChange]:
        """Conditional debit; None when the balance is insufficient or the account inactive"""
        row = await uow.debit_account(tenant_id, entity_id, amount)
        if not row:
            return None
        return BalanceChange(previous_balance=row["previous_balance"], new_balance=row["new_balance"])

    async def credit(
        self,
        uow: LedgerUnitOfWorkProtocol,
        tenant_id: str,
        entity_id: str,
        amount: int,
        free_credits: int = 0,
        free_credits_expires_at: Optional[datetime] = None,
    ) -> Optional[BalanceChange]:
        """Credit an account, creating it lazily; None when it is inactive"""
        await uow.ensure_account(tenant_id, entity_id)
        row = await uow.credit_account(
            tenant_id,
            entity_id,
            amount,
            free_credits=free_credits,
            free_credits_expires_at=free_credits_expires_at,
        )
        if not row:
            return None
        return BalanceChange(previous_balance=row["previous_balance"], new_balance=row["new_balance"])

    async def sweep_free_credits(
        self,
        uow: LedgerUnitOfWorkProtocol,
        tenant_id: str,
        entity_id: str,
        now: datetime,
        force: bool = False,
    ) -> Optional[BalanceChange]:
        """Remove expired free credits; None when nothing was due"""
        row = await uow.sweep_free_credits(tenant_id, entity_id, now, force=force)
        if not row:
            return None
        return BalanceChange(previous_balance=row["previous_balance"], new_balance=row["new_balance"])
