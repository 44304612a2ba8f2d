"""
Credit Ledger Service

Multi-tenant usage-credit ledger and allocation engine for isA platform.

Features:
- Per-(tenant, entity) credit accounts with lazy creation and soft deactivation
- Append-only transaction ledger written atomically with every balance change
- Overdraft-safe consumption via atomic conditional updates
- Operation pricing with per-tenant overrides of the global price
- Idempotent credit addition keyed by external payment references
- Transfers with compensation on partial failure
- Application allocations tracked as disjoint sub-ledgers
- Category-based expiry sweeps (allocations and free-credit sub-balances)
- Campaign distribution across tenants with equal/proportional/custom shares
- Event-driven integration with notification and billing services
"""

__version__ = "1.0.0"
