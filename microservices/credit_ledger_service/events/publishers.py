"""
Credit Ledger Service Event Publishers

Publish events for balance, allocation and campaign lifecycle.
Publishing happens after commit; failures are logged and never undo the operation.
"""

import logging
from datetime import datetime
from typing import List, Optional

from core.nats_client import Event, ServiceSource

from .models import (
    CreditLedgerEventType,
    create_allocation_created_event_data,
    create_allocation_expired_event_data,
    create_allocation_expiring_soon_event_data,
    create_balance_low_event_data,
    create_campaign_allocation_degraded_event_data,
    create_campaign_distributed_event_data,
    create_credits_added_event_data,
    create_credits_consumed_event_data,
    create_credits_transferred_event_data,
)

logger = logging.getLogger(__name__)

SOURCE = ServiceSource.CREDIT_LEDGER_SERVICE.value


# ============================================================================
# Balance Event Publishers
# ============================================================================


async def publish_credits_added(
    event_bus,
    tenant_id: str,
    entity_id: str,
    amount: int,
    source: str,
    transaction_id: str,
    balance_after: int,
    credit_category: str = "paid",
    idempotency_key: Optional[str] = None,
):
    """
    Publish credit_ledger.credits.added event

    Args:
        event_bus: NATS event bus instance
        tenant_id: Tenant ID
        entity_id: Credited entity
        amount: Credits added
        source: payment, plan, campaign, manual or transfer
        transaction_id: Ledger transaction ID
        balance_after: Available balance after the credit
        credit_category: paid or free
        idempotency_key: External reference (optional)
    """
    try:
        event_data = create_credits_added_event_data(
            tenant_id=tenant_id,
            entity_id=entity_id,
            amount=amount,
            source=source,
            transaction_id=transaction_id,
            balance_after=balance_after,
            credit_category=credit_category,
            idempotency_key=idempotency_key,
        )

        event = Event(
            event_type=CreditLedgerEventType.CREDITS_ADDED.value,
            source=SOURCE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(f"Published credits.added for {tenant_id}/{entity_id}: {amount} ({source})")

    except Exception as e:
        logger.error(f"Failed to publish credits.added: {e}")


async def publish_credits_consumed(
    event_bus,
    tenant_id: str,
    entity_id: str,
    operation_code: str,
    amount: int,
    transaction_id: str,
    balance_before: int,
    balance_after: int,
):
    """
    Publish credit_ledger.credits.consumed event

    Args:
        event_bus: NATS event bus instance
        tenant_id: Tenant ID
        entity_id: Charged entity
        operation_code: Operation that consumed the credits
        amount: Credits consumed
        transaction_id: Ledger transaction ID
        balance_before: Balance before consumption
        balance_after: Balance after consumption
    """
    try:
        event_data = create_credits_consumed_event_data(
            tenant_id=tenant_id,
            entity_id=entity_id,
            operation_code=operation_code,
            amount=amount,
            transaction_id=transaction_id,
            balance_before=balance_before,
            balance_after=balance_after,
        )

        event = Event(
            event_type=CreditLedgerEventType.CREDITS_CONSUMED.value,
            source=SOURCE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(
            f"Published credits.consumed for {tenant_id}/{entity_id}: {amount} credits, "
            f"balance: {balance_before} -> {balance_after}"
        )

    except Exception as e:
        logger.error(f"Failed to publish credits.consumed: {e}")


async def publish_credits_transferred(
    event_bus,
    transfer_id: str,
    tenant_id: str,
    from_entity_id: str,
    to_entity_id: str,
    amount: int,
    from_balance_after: int,
    to_balance_after: int,
):
    """Publish credit_ledger.credits.transferred event"""
    try:
        event_data = create_credits_transferred_event_data(
            transfer_id=transfer_id,
            tenant_id=tenant_id,
            from_entity_id=from_entity_id,
            to_entity_id=to_entity_id,
            amount=amount,
            from_balance_after=from_balance_after,
            to_balance_after=to_balance_after,
        )

        event = Event(
            event_type=CreditLedgerEventType.CREDITS_TRANSFERRED.value,
            source=SOURCE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(f"Published credits.transferred {transfer_id}: {from_entity_id} -> {to_entity_id} ({amount})")

    except Exception as e:
        logger.error(f"Failed to publish credits.transferred: {e}")


async def publish_balance_low(
    event_bus,
    tenant_id: str,
    entity_id: str,
    balance: int,
    threshold: int,
    severity: str,
):
    """Publish credit_ledger.balance.low event"""
    try:
        event_data = create_balance_low_event_data(
            tenant_id=tenant_id,
            entity_id=entity_id,
            balance=balance,
            threshold=threshold,
            severity=severity,
        )

        event = Event(
            event_type=CreditLedgerEventType.BALANCE_LOW.value,
            source=SOURCE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(f"Published balance.low for {tenant_id}/{entity_id}: {balance} <= {threshold} ({severity})")

    except Exception as e:
        logger.error(f"Failed to publish balance.low: {e}")


# ============================================================================
# Allocation Event Publishers
# ============================================================================


async def publish_allocation_created(
    event_bus,
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
):
    """
    Publish credit_ledger.allocation.created event

    Args:
        event_bus: NATS event bus instance
        allocation_id: Allocation ID
        tenant_id: Tenant ID
        source_entity_id: Debited entity
        target_application: Consuming application
        credit_type: Credit type
        amount: Credits added by this call
        allocated_credits: Allocation total after this call
        available_credits: Allocation available after this call
        created: False for a top-up
        campaign_id: Campaign ID if from campaign (optional)
        expires_at: Allocation expiry (optional)
    """
    try:
        event_data = create_allocation_created_event_data(
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

        event = Event(
            event_type=CreditLedgerEventType.ALLOCATION_CREATED.value,
            source=SOURCE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(
            f"Published allocation.created {allocation_id}: {amount} {credit_type} credits to {target_application}"
        )

    except Exception as e:
        logger.error(f"Failed to publish allocation.created: {e}")


async def publish_allocation_expired(
    event_bus,
    tenant_id: str,
    entity_id: str,
    credit_type: str,
    expired_credits: int,
    allocation_id: Optional[str] = None,
    target_application: Optional[str] = None,
    campaign_id: Optional[str] = None,
    reason: str = "expired",
):
    """Publish credit_ledger.allocation.expired event"""
    try:
        event_data = create_allocation_expired_event_data(
            tenant_id=tenant_id,
            entity_id=entity_id,
            credit_type=credit_type,
            expired_credits=expired_credits,
            allocation_id=allocation_id,
            target_application=target_application,
            campaign_id=campaign_id,
            reason=reason,
        )

        event = Event(
            event_type=CreditLedgerEventType.ALLOCATION_EXPIRED.value,
            source=SOURCE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(
            f"Published allocation.expired for {tenant_id}/{entity_id}: "
            f"{expired_credits} {credit_type} credits ({allocation_id or 'free credits'})"
        )

    except Exception as e:
        logger.error(f"Failed to publish allocation.expired: {e}")


async def publish_allocation_expiring_soon(
    event_bus,
    allocation_id: str,
    tenant_id: str,
    source_entity_id: str,
    target_application: str,
    credit_type: str,
    available_credits: int,
    expires_at: datetime,
    days_until_expiry: int,
    campaign_id: Optional[str] = None,
):
    """Publish credit_ledger.allocation.expiring_soon event"""
    try:
        event_data = create_allocation_expiring_soon_event_data(
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

        event = Event(
            event_type=CreditLedgerEventType.ALLOCATION_EXPIRING_SOON.value,
            source=SOURCE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(f"Published allocation.expiring_soon {allocation_id}: {available_credits} in {days_until_expiry} days")

    except Exception as e:
        logger.error(f"Failed to publish allocation.expiring_soon: {e}")


# ============================================================================
# Campaign Event Publishers
# ============================================================================


async def publish_campaign_distributed(
    event_bus,
    campaign_id: str,
    campaign_name: str,
    credit_type: str,
    distributed_count: int,
    failed_count: int,
    total_distributed: int,
    failed_tenant_ids: Optional[List[str]] = None,
):
    """Publish credit_ledger.campaign.distributed event"""
    try:
        event_data = create_campaign_distributed_event_data(
            campaign_id=campaign_id,
            campaign_name=campaign_name,
            credit_type=credit_type,
            distributed_count=distributed_count,
            failed_count=failed_count,
            total_distributed=total_distributed,
            failed_tenant_ids=failed_tenant_ids,
        )

        event = Event(
            event_type=CreditLedgerEventType.CAMPAIGN_DISTRIBUTED.value,
            source=SOURCE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(
            f"Published campaign.distributed {campaign_id}: "
            f"{distributed_count} tenants, {failed_count} failed, {total_distributed} credits"
        )

    except Exception as e:
        logger.error(f"Failed to publish campaign.distributed: {e}")


async def publish_campaign_allocation_degraded(
    event_bus,
    campaign_id: str,
    tenant_id: str,
    failed_strategy: str,
    error: str,
    next_strategy: Optional[str] = None,
):
    """Publish credit_ledger.campaign.allocation_degraded event"""
    try:
        event_data = create_campaign_allocation_degraded_event_data(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            failed_strategy=failed_strategy,
            next_strategy=next_strategy,
            error=error,
        )

        event = Event(
            event_type=CreditLedgerEventType.CAMPAIGN_ALLOCATION_DEGRADED.value,
            source=SOURCE,
            data=event_data.model_dump(mode='json'),
        )

        await event_bus.publish_event(event)
        logger.info(f"Published campaign.allocation_degraded {campaign_id}/{tenant_id}: {failed_strategy} failed")

    except Exception as e:
        logger.error(f"Failed to publish campaign.allocation_degraded: {e}")
