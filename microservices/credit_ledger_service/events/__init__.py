"""
Credit Ledger Service Event Package

Publishing: balance, allocation and campaign lifecycle events
(stream credit-ledger-stream, subjects credit_ledger.>)
"""

from .models import (
    CreditLedgerEventType,
    CreditLedgerStreamConfig,
    CreditsAddedEventData,
    CreditsConsumedEventData,
    CreditsTransferredEventData,
    BalanceLowEventData,
    AllocationCreatedEventData,
    AllocationExpiredEventData,
    AllocationExpiringSoonEventData,
    CampaignDistributedEventData,
    CampaignAllocationDegradedEventData,
)

from .publishers import (
    publish_credits_added,
    publish_credits_consumed,
    publish_credits_transferred,
    publish_balance_low,
    publish_allocation_created,
    publish_allocation_expired,
    publish_allocation_expiring_soon,
    publish_campaign_distributed,
    publish_campaign_allocation_degraded,
)

__all__ = [
    # Event types
    "CreditLedgerEventType",
    "CreditLedgerStreamConfig",
    # Event models
    "CreditsAddedEventData",
    "CreditsConsumedEventData",
    "CreditsTransferredEventData",
    "BalanceLowEventData",
    "AllocationCreatedEventData",
    "AllocationExpiredEventData",
    "AllocationExpiringSoonEventData",
    "CampaignDistributedEventData",
    "CampaignAllocationDegradedEventData",
    # Publishers
    "publish_credits_added",
    "publish_credits_consumed",
    "publish_credits_transferred",
    "publish_balance_low",
    "publish_allocation_created",
    "publish_allocation_expired",
    "publish_allocation_expiring_soon",
    "publish_campaign_distributed",
    "publish_campaign_allocation_degraded",
]
