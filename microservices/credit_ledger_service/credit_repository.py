"""
Credit Ledger Service Data Repository

Data access layer - PostgreSQL via asyncpg
Implements LedgerRepositoryProtocol and LedgerUnitOfWorkProtocol from protocols.py

Every balance or allocation mutation is a single conditional UPDATE ... RETURNING,
so the pre/post values written to the ledger come from the same atomic step.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from core.config.ledger_config import CreditLedgerConfig
from core.postgres_client import PostgresClientWrapper

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
DEFAULT_SCHEMA = "credit_ledger"

JSON_FIELDS = (
    "metadata",
    "details",
    "target_tenant_ids",
    "target_applications",
    "distribution_weights",
    "custom_allocations",
)


def _row_to_dict(row: Optional[asyncpg.Record]) -> Dict[str, Any]:
    """Convert database row to dictionary"""
    if not row:
        return {}

    result = {}
    for key, value in dict(row).items():
        # Parse JSON strings back to Python objects
        if key in JSON_FIELDS and isinstance(value, str):
            try:
                result[key] = json.loads(value)
            except (json.JSONDecodeError, TypeError):
                result[key] = {}
        else:
            result[key] = value
    return result


class TableNames:
    """Fully qualified table names for a schema"""

    def __init__(self, schema: str):
        self.schema = schema
        self.accounts = f"{schema}.credit_accounts"
        self.transactions = f"{schema}.credit_transactions"
        self.allocations = f"{schema}.credit_allocations"
        self.campaigns = f"{schema}.credit_campaigns"
        self.idempotency_keys = f"{schema}.idempotency_keys"
        self.flags = f"{schema}.reconciliation_flags"
        self.operation_costs = f"{schema}.operation_costs"


class PostgresLedgerUnitOfWork:
    """Mutations on one connection inside an open transaction"""

    def __init__(self, conn: asyncpg.Connection, tables: TableNames):
        self.conn = conn
        self.tables = tables

    # ====================
    # Accounts
    # ====================

    async def ensure_account(self, tenant_id: str, entity_id: str) -> Dict[str, Any]:
        """Create the account row if absent"""
        try:
            now = datetime.now(timezone.utc)
            await self.conn.execute(
                f'''
                INSERT INTO {self.tables.accounts} (tenant_id, entity_id, created_at, last_updated_at)
                VALUES ($1, $2, $3, $3)
                ON CONFLICT (tenant_id, entity_id) DO NOTHING
                ''',
                tenant_id, entity_id, now,
            )
            row = await self.conn.fetchrow(
                f"SELECT * FROM {self.tables.accounts} WHERE tenant_id = $1 AND entity_id = $2",
                tenant_id, entity_id,
            )
            return _row_to_dict(row)

        except Exception as e:
            logger.error(f"Error ensuring account {tenant_id}/{entity_id}: {e}", exc_info=True)
            raise

    async def debit_account(self, tenant_id: str, entity_id: str, amount: int) -> Optional[Dict[str, Any]]:
        """Atomic conditional debit"""
        try:
            row = await self.conn.fetchrow(
                f'''
                UPDATE {self.tables.accounts}
                SET available_credits = available_credits - $3::bigint,
                    free_credits = GREATEST(free_credits - $3::bigint, 0),
                    last_updated_at = $4
                WHERE tenant_id = $1 AND entity_id = $2
                  AND is_active
                  AND available_credits >= $3::bigint
                RETURNING available_credits + $3::bigint AS previous_balance,
                          available_credits AS new_balance
                ''',
                tenant_id, entity_id, amount, datetime.now(timezone.utc),
            )
            if row is None:
                logger.info(f"Debit of {amount} rejected for {tenant_id}/{entity_id} - insufficient or inactive")
                return None
            return _row_to_dict(row)

        except Exception as e:
            logger.error(f"Error debiting account {tenant_id}/{entity_id}: {e}", exc_info=True)
            raise

    async def credit_account(
        self,
        tenant_id: str,
        entity_id: str,
        amount: int,
        free_credits: int = 0,
        free_credits_expires_at: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """Atomic credit of an active account"""
        try:
            row = await self.conn.fetchrow(
                f'''
                UPDATE {self.tables.accounts}
                SET available_credits = available_credits + $3::bigint,
                    free_credits = free_credits + $4::bigint,
                    free_credits_expires_at = CASE
                        WHEN $4::bigint > 0 AND $5::timestamptz IS NOT NULL
                            THEN GREATEST(COALESCE(free_credits_expires_at, $5::timestamptz), $5::timestamptz)
                        ELSE free_credits_expires_at
                    END,
                    last_updated_at = $6
                WHERE tenant_id = $1 AND entity_id = $2 AND is_active
                RETURNING available_credits - $3::bigint AS previous_balance,
                          available_credits AS new_balance
                ''',
                tenant_id, entity_id, amount, free_credits, free_credits_expires_at, datetime.now(timezone.utc),
            )
            if row is None:
                logger.warning(f"Credit of {amount} rejected for {tenant_id}/{entity_id} - account missing or inactive")
                return None
            return _row_to_dict(row)

        except Exception as e:
            logger.error(f"Error crediting account {tenant_id}/{entity_id}: {e}", exc_info=True)
            raise

    async def sweep_free_credits(
        self, tenant_id: str, entity_id: str, now: datetime, force: bool = False
    ) -> Optional[Dict[str, Any]]:
        """Remove the free-credit sub-balance, re-checking its expiry under the row lock"""
        try:
            row = await self.conn.fetchrow(
                f'''
                WITH target AS (
                    SELECT tenant_id, entity_id,
                           free_credits AS swept,
                           available_credits AS previous_balance
                    FROM {self.tables.accounts}
                    WHERE tenant_id = $1 AND entity_id = $2
                      AND free_credits > 0
                      AND ($4::boolean OR free_credits_expires_at <= $3)
                    FOR UPDATE
                )
                UPDATE {self.tables.accounts} a
                SET available_credits = a.available_credits - a.free_credits,
                    free_credits = 0,
                    free_credits_expires_at = NULL,
                    last_updated_at = $3
                FROM target
                WHERE a.tenant_id = target.tenant_id AND a.entity_id = target.entity_id
                RETURNING target.previous_balance, a.available_credits AS new_balance, target.swept
                ''',
                tenant_id, entity_id, now, force,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error sweeping free credits for {tenant_id}/{entity_id}: {e}", exc_info=True)
            raise

    # ====================
    # Ledger
    # ====================

    async def insert_transaction(self, txn_data: Dict[str, Any]) -> Dict[str, Any]:
        """Append a ledger row"""
        try:
            transaction_id = txn_data.get("transaction_id") or f"cred_txn_{uuid.uuid4().hex[:20]}"
            row = await self.conn.fetchrow(
                f'''
                INSERT INTO {self.tables.transactions} (
                    transaction_id, tenant_id, entity_id, transaction_type, amount,
                    previous_balance, new_balance, operation_code, initiated_by,
                    ledger_scope, allocation_id, idempotency_key, metadata, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb, $14)
                RETURNING *
                ''',
                transaction_id,
                txn_data["tenant_id"],
                txn_data["entity_id"],
                txn_data["transaction_type"],
                txn_data["amount"],
                txn_data["previous_balance"],
                txn_data["new_balance"],
                txn_data["operation_code"],
                txn_data.get("initiated_by"),
                txn_data.get("ledger_scope", "account"),
                txn_data.get("allocation_id"),
                txn_data.get("idempotency_key"),
                json.dumps(txn_data.get("metadata") or {}),
                txn_data.get("created_at") or datetime.now(timezone.utc),
            )
            return _row_to_dict(row)

        except Exception as e:
            logger.error(f"Error creating ledger transaction: {e}", exc_info=True)
            raise

    async def claim_idempotency_key(self, idempotency_key: str, tenant_id: str, entity_id: str) -> bool:
        """Insert into the applied-keys index; False if the key was already applied"""
        try:
            row = await self.conn.fetchrow(
                f'''
                INSERT INTO {self.tables.idempotency_keys} (idempotency_key, tenant_id, entity_id, created_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (idempotency_key) DO NOTHING
                RETURNING idempotency_key
                ''',
                idempotency_key, tenant_id, entity_id, datetime.now(timezone.utc),
            )
            return row is not None

        except Exception as e:
            logger.error(f"Error claiming idempotency key {idempotency_key}: {e}", exc_info=True)
            raise

    async def attach_idempotency_transaction(self, idempotency_key: str, transaction_id: str) -> None:
        """Record which ledger row a claimed key produced"""
        try:
            await self.conn.execute(
                f"UPDATE {self.tables.idempotency_keys} SET transaction_id = $2 WHERE idempotency_key = $1",
                idempotency_key, transaction_id,
            )

        except Exception as e:
            logger.error(f"Error attaching transaction to idempotency key {idempotency_key}: {e}", exc_info=True)
            raise

    # ====================
    # Allocations
    # ====================

    async def upsert_allocation(self, alloc_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create or top up the active allocation for the scope"""
        try:
            now = datetime.now(timezone.utc)
            allocation_id = alloc_data.get("allocation_id") or f"cred_alloc_{uuid.uuid4().hex[:20]}"
            amount = alloc_data["allocated_credits"]

            row = await self.conn.fetchrow(
                f'''
                INSERT INTO {self.tables.allocations} AS t (
                    allocation_id, tenant_id, source_entity_id, target_application, credit_type,
                    allocated_credits, used_credits, available_credits, campaign_id, purpose,
                    expires_at, auto_replenish, is_active, metadata, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, 0, $6, $7, $8, $9, $10, TRUE, $11::jsonb, $12, $12)
                ON CONFLICT (tenant_id, source_entity_id, target_application, credit_type, (COALESCE(campaign_id, '')))
                    WHERE is_active
                DO UPDATE SET
                    allocated_credits = t.allocated_credits + EXCLUDED.allocated_credits,
                    available_credits = t.available_credits + EXCLUDED.available_credits,
                    expires_at = CASE
                        WHEN t.expires_at IS NULL OR EXCLUDED.expires_at IS NULL THEN NULL
                        ELSE GREATEST(t.expires_at, EXCLUDED.expires_at)
                    END,
                    auto_replenish = t.auto_replenish OR EXCLUDED.auto_replenish,
                    purpose = COALESCE(EXCLUDED.purpose, t.purpose),
                    metadata = t.metadata || EXCLUDED.metadata,
                    updated_at = EXCLUDED.updated_at
                RETURNING t.*, (xmax = 0) AS created
                ''',
                allocation_id,
                alloc_data["tenant_id"],
                alloc_data["source_entity_id"],
                alloc_data["target_application"],
                alloc_data["credit_type"],
                amount,
                alloc_data.get("campaign_id"),
                alloc_data.get("purpose"),
                alloc_data.get("expires_at"),
                alloc_data.get("auto_replenish", False),
                json.dumps(alloc_data.get("metadata") or {}),
                now,
            )
            return _row_to_dict(row)

        except Exception as e:
            logger.error(f"Error upserting allocation: {e}", exc_info=True)
            raise

    async def consume_allocation(self, allocation_id: str, amount: int, now: datetime) -> Optional[Dict[str, Any]]:
        """Atomic conditional move from available to used"""
        try:
            row = await self.conn.fetchrow(
                f'''
                UPDATE {self.tables.allocations}
                SET available_credits = available_credits - $2::bigint,
                    used_credits = used_credits + $2::bigint,
                    updated_at = $3
                WHERE allocation_id = $1
                  AND is_active
                  AND available_credits >= $2::bigint
                  AND (expires_at IS NULL OR expires_at > $3)
                RETURNING *, available_credits + $2::bigint AS previous_available
                ''',
                allocation_id, amount, now,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error consuming from allocation {allocation_id}: {e}", exc_info=True)
            raise

    async def expire_stale_allocation(self, scope: Dict[str, Any], now: datetime) -> Optional[Dict[str, Any]]:
        """Close the scope's active allocation if it has already expired"""
        try:
            row = await self.conn.fetchrow(
                f'''
                WITH target AS (
                    SELECT allocation_id, available_credits AS previous_available
                    FROM {self.tables.allocations}
                    WHERE tenant_id = $1
                      AND source_entity_id = $2
                      AND target_application = $3
                      AND credit_type = $4
                      AND COALESCE(campaign_id, '') = COALESCE($5, '')
                      AND is_active
                      AND expires_at IS NOT NULL AND expires_at <= $6
                    FOR UPDATE
                )
                UPDATE {self.tables.allocations} a
                SET available_credits = 0,
                    is_active = FALSE,
                    expired_at = $6,
                    updated_at = $6
                FROM target
                WHERE a.allocation_id = target.allocation_id
                RETURNING a.*, target.previous_available
                ''',
                scope["tenant_id"],
                scope["source_entity_id"],
                scope["target_application"],
                scope["credit_type"],
                scope.get("campaign_id"),
                now,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error expiring stale allocation for {scope.get('target_application')}: {e}", exc_info=True)
            raise

    async def expire_allocation(self, allocation_id: str, now: datetime, force: bool = False) -> Optional[Dict[str, Any]]:
        """Close an allocation, re-checking expires_at under the row lock"""
        try:
            row = await self.conn.fetchrow(
                f'''
                WITH target AS (
                    SELECT allocation_id, available_credits AS previous_available
                    FROM {self.tables.allocations}
                    WHERE allocation_id = $1
                      AND is_active
                      AND ($3::boolean OR (expires_at IS NOT NULL AND expires_at <= $2))
                    FOR UPDATE
                )
                UPDATE {self.tables.allocations} a
                SET available_credits = 0,
                    is_active = FALSE,
                    expired_at = $2,
                    updated_at = $2
                FROM target
                WHERE a.allocation_id = target.allocation_id
                RETURNING a.*, target.previous_available
                ''',
                allocation_id, now, force,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error expiring allocation {allocation_id}: {e}", exc_info=True)
            raise


class CreditLedgerRepository:
    """Credit ledger data repository - PostgreSQL (Async)"""

    def __init__(
        self,
        config: Optional[CreditLedgerConfig] = None,
        db: Optional[PostgresClientWrapper] = None,
    ):
        if config is None:
            config = CreditLedgerConfig.from_env()

        self.db = db or PostgresClientWrapper(
            service_name=config.service_name,
            config=config.infrastructure,
        )
        self.schema = config.db_schema
        self.tables = TableNames(self.schema)

    async def initialize(self, apply_migrations: bool = False):
        """Initialize database connection (and optionally the schema)"""
        await self.db.connect()
        if apply_migrations:
            await self.apply_migrations()
        logger.info(f"Credit ledger repository initialized with PostgreSQL (schema={self.schema})")

    async def apply_migrations(self):
        """Run the bundled SQL migrations in file order"""
        for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
            sql = path.read_text()
            if self.schema != DEFAULT_SCHEMA:
                sql = sql.replace(f"{DEFAULT_SCHEMA}.", f"{self.schema}.").replace(
                    f"SCHEMA IF NOT EXISTS {DEFAULT_SCHEMA}", f"SCHEMA IF NOT EXISTS {self.schema}"
                )
            async with self.db.acquire() as conn:
                await conn.execute(sql)
            logger.info(f"Applied migration {path.name}")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Credit ledger repository database connection closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresLedgerUnitOfWork]:
        """Open a unit of work on one pooled connection"""
        async with self.db.transaction() as conn:
            yield PostgresLedgerUnitOfWork(conn, self.tables)

    # ====================
    # Accounts
    # ====================

    async def get_account(self, tenant_id: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Get account by tenant and entity"""
        try:
            row = await self.db.pool.fetchrow(
                f"SELECT * FROM {self.tables.accounts} WHERE tenant_id = $1 AND entity_id = $2",
                tenant_id, entity_id,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error getting account {tenant_id}/{entity_id}: {e}")
            raise

    async def set_account_active(self, tenant_id: str, entity_id: str, is_active: bool) -> Optional[Dict[str, Any]]:
        """Soft-activate or deactivate an account"""
        try:
            row = await self.db.pool.fetchrow(
                f'''
                UPDATE {self.tables.accounts}
                SET is_active = $3, last_updated_at = $4
                WHERE tenant_id = $1 AND entity_id = $2
                RETURNING *
                ''',
                tenant_id, entity_id, is_active, datetime.now(timezone.utc),
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error updating account status {tenant_id}/{entity_id}: {e}")
            raise

    async def list_expired_free_credit_accounts(self, now: datetime) -> List[Dict[str, Any]]:
        """Accounts whose free-credit sub-balance has expired"""
        try:
            rows = await self.db.pool.fetch(
                f'''
                SELECT * FROM {self.tables.accounts}
                WHERE free_credits > 0 AND free_credits_expires_at <= $1
                ORDER BY free_credits_expires_at ASC
                ''',
                now,
            )
            return [_row_to_dict(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing expired free-credit accounts: {e}")
            raise

    async def list_free_credit_accounts(self, tenant_id: str) -> List[Dict[str, Any]]:
        """A tenant's accounts holding free credits"""
        try:
            rows = await self.db.pool.fetch(
                f"SELECT * FROM {self.tables.accounts} WHERE tenant_id = $1 AND free_credits > 0",
                tenant_id,
            )
            return [_row_to_dict(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing free-credit accounts for {tenant_id}: {e}")
            raise

    # ====================
    # Ledger
    # ====================

    async def get_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        """Get ledger row by ID"""
        try:
            row = await self.db.pool.fetchrow(
                f"SELECT * FROM {self.tables.transactions} WHERE transaction_id = $1",
                transaction_id,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error getting transaction {transaction_id}: {e}")
            raise

    async def list_transactions(self, tenant_id: str, entity_id: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Get ledger rows for an account, newest first"""
        try:
            conditions = ["tenant_id = $1", "entity_id = $2"]
            params: List[Any] = [tenant_id, entity_id]
            param_count = 2

            if filters.get("transaction_type"):
                param_count += 1
                conditions.append(f"transaction_type = ${param_count}")
                params.append(filters["transaction_type"])

            if filters.get("start_date"):
                param_count += 1
                conditions.append(f"created_at >= ${param_count}")
                params.append(filters["start_date"])

            if filters.get("end_date"):
                param_count += 1
                conditions.append(f"created_at <= ${param_count}")
                params.append(filters["end_date"])

            if filters.get("ledger_scope"):
                param_count += 1
                conditions.append(f"ledger_scope = ${param_count}")
                params.append(filters["ledger_scope"])

            params.extend([filters.get("limit", 50), filters.get("offset", 0)])
            query = f'''
                SELECT * FROM {self.tables.transactions}
                WHERE {" AND ".join(conditions)}
                ORDER BY created_at DESC, id DESC
                LIMIT ${param_count + 1} OFFSET ${param_count + 2}
            '''

            rows = await self.db.pool.fetch(query, *params)
            return [_row_to_dict(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing transactions for {tenant_id}/{entity_id}: {e}")
            raise

    async def sum_ledger_amounts(
        self,
        tenant_id: str,
        entity_id: str,
        ledger_scope: str = "account",
        allocation_id: Optional[str] = None,
    ) -> int:
        """Sum signed ledger amounts"""
        try:
            if allocation_id:
                value = await self.db.pool.fetchval(
                    f'''
                    SELECT COALESCE(SUM(amount), 0) FROM {self.tables.transactions}
                    WHERE allocation_id = $1 AND ledger_scope = $2
                    ''',
                    allocation_id, ledger_scope,
                )
            else:
                value = await self.db.pool.fetchval(
                    f'''
                    SELECT COALESCE(SUM(amount), 0) FROM {self.tables.transactions}
                    WHERE tenant_id = $1 AND entity_id = $2 AND ledger_scope = $3
                    ''',
                    tenant_id, entity_id, ledger_scope,
                )
            return int(value or 0)

        except Exception as e:
            logger.error(f"Error summing ledger for {tenant_id}/{entity_id}: {e}")
            raise

    async def get_idempotency_record(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        """Get an applied idempotency key"""
        try:
            row = await self.db.pool.fetchrow(
                f"SELECT * FROM {self.tables.idempotency_keys} WHERE idempotency_key = $1",
                idempotency_key,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error getting idempotency key {idempotency_key}: {e}")
            raise

    # ====================
    # Allocations
    # ====================

    async def get_allocation(self, allocation_id: str) -> Optional[Dict[str, Any]]:
        """Get allocation by ID"""
        try:
            row = await self.db.pool.fetchrow(
                f"SELECT * FROM {self.tables.allocations} WHERE allocation_id = $1",
                allocation_id,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error getting allocation {allocation_id}: {e}")
            raise

    async def list_active_allocations(self, tenant_id: str, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Active allocations for a tenant, optionally one source entity"""
        try:
            if entity_id:
                rows = await self.db.pool.fetch(
                    f'''
                    SELECT * FROM {self.tables.allocations}
                    WHERE tenant_id = $1 AND source_entity_id = $2 AND is_active
                    ORDER BY created_at ASC
                    ''',
                    tenant_id, entity_id,
                )
            else:
                rows = await self.db.pool.fetch(
                    f'''
                    SELECT * FROM {self.tables.allocations}
                    WHERE tenant_id = $1 AND is_active
                    ORDER BY created_at ASC
                    ''',
                    tenant_id,
                )
            return [_row_to_dict(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing allocations for {tenant_id}: {e}")
            raise

    async def list_expired_allocations(
        self, now: datetime, credit_types: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """Active allocations with expires_at <= now"""
        try:
            if credit_types:
                rows = await self.db.pool.fetch(
                    f'''
                    SELECT * FROM {self.tables.allocations}
                    WHERE is_active AND expires_at <= $1 AND credit_type = ANY($2::varchar[])
                    ORDER BY expires_at ASC
                    ''',
                    now, list(credit_types),
                )
            else:
                rows = await self.db.pool.fetch(
                    f'''
                    SELECT * FROM {self.tables.allocations}
                    WHERE is_active AND expires_at <= $1
                    ORDER BY expires_at ASC
                    ''',
                    now,
                )
            return [_row_to_dict(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing expired allocations: {e}")
            raise

    async def list_expiring_allocations(
        self,
        start: datetime,
        end: datetime,
        tenant_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Active allocations expiring in (start, end]"""
        try:
            rows = await self.db.pool.fetch(
                f'''
                SELECT * FROM {self.tables.allocations}
                WHERE is_active
                  AND expires_at > $1 AND expires_at <= $2
                  AND ($3::varchar IS NULL OR tenant_id = $3)
                  AND ($4::varchar IS NULL OR source_entity_id = $4)
                ORDER BY expires_at ASC
                ''',
                start, end, tenant_id, entity_id,
            )
            return [_row_to_dict(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing expiring allocations: {e}")
            raise

    async def extend_allocations(
        self, campaign_id: str, delta: timedelta, tenant_id: Optional[str] = None
    ) -> int:
        """Push expires_at forward on the campaign's active allocations"""
        try:
            rows = await self.db.pool.fetch(
                f'''
                UPDATE {self.tables.allocations}
                SET expires_at = expires_at + $2::interval,
                    updated_at = $4
                WHERE campaign_id = $1
                  AND is_active
                  AND expires_at IS NOT NULL
                  AND ($3::varchar IS NULL OR tenant_id = $3)
                RETURNING allocation_id
                ''',
                campaign_id, delta, tenant_id, datetime.now(timezone.utc),
            )
            logger.info(f"Extended {len(rows)} allocations of campaign {campaign_id} by {delta}")
            return len(rows)

        except Exception as e:
            logger.error(f"Error extending allocations of campaign {campaign_id}: {e}")
            raise

    async def list_campaign_allocations(self, campaign_id: str, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Every allocation tagged with the campaign"""
        try:
            rows = await self.db.pool.fetch(
                f'''
                SELECT * FROM {self.tables.allocations}
                WHERE campaign_id = $1 AND ($2::varchar IS NULL OR tenant_id = $2)
                ORDER BY tenant_id ASC, created_at ASC
                ''',
                campaign_id, tenant_id,
            )
            return [_row_to_dict(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing allocations of campaign {campaign_id}: {e}")
            raise

    # ====================
    # Campaigns
    # ====================

    async def create_campaign(self, campaign_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create campaign"""
        try:
            now = datetime.now(timezone.utc)
            campaign_id = campaign_data.get("campaign_id") or f"camp_{uuid.uuid4().hex[:20]}"

            row = await self.db.pool.fetchrow(
                f'''
                INSERT INTO {self.tables.campaigns} (
                    campaign_id, campaign_name, description, credit_type, total_credits,
                    distribution_method, target_tenant_ids, target_all_tenants, target_applications,
                    distribution_weights, custom_allocations, expires_at, status,
                    created_by, metadata, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9::jsonb, $10::jsonb, $11::jsonb,
                          $12, $13, $14, $15::jsonb, $16, $16)
                RETURNING *
                ''',
                campaign_id,
                campaign_data["campaign_name"],
                campaign_data.get("description"),
                campaign_data["credit_type"],
                campaign_data["total_credits"],
                campaign_data.get("distribution_method", "equal"),
                json.dumps(campaign_data.get("target_tenant_ids") or []),
                campaign_data.get("target_all_tenants", False),
                json.dumps(campaign_data.get("target_applications") or []),
                json.dumps(campaign_data.get("distribution_weights") or {}),
                json.dumps(campaign_data.get("custom_allocations") or {}),
                campaign_data.get("expires_at"),
                campaign_data.get("status", "draft"),
                campaign_data.get("created_by"),
                json.dumps(campaign_data.get("metadata") or {}),
                now,
            )
            return _row_to_dict(row)

        except Exception as e:
            logger.error(f"Error creating campaign: {e}", exc_info=True)
            raise

    async def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        """Get campaign by ID"""
        try:
            row = await self.db.pool.fetchrow(
                f"SELECT * FROM {self.tables.campaigns} WHERE campaign_id = $1",
                campaign_id,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error getting campaign {campaign_id}: {e}")
            raise

    async def transition_campaign_status(
        self,
        campaign_id: str,
        from_statuses: List[str],
        to_status: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Conditional status change"""
        try:
            set_clauses = ["status = $3", "updated_at = $4"]
            params: List[Any] = [campaign_id, list(from_statuses), to_status, datetime.now(timezone.utc)]
            for field_name, value in (updates or {}).items():
                params.append(value)
                set_clauses.append(f"{field_name} = ${len(params)}")

            row = await self.db.pool.fetchrow(
                f'''
                UPDATE {self.tables.campaigns}
                SET {", ".join(set_clauses)}
                WHERE campaign_id = $1 AND status = ANY($2::varchar[])
                RETURNING *
                ''',
                *params,
            )
            if row is None:
                logger.info(f"Campaign {campaign_id} not moved to {to_status} - status not in {from_statuses}")
                return None
            return _row_to_dict(row)

        except Exception as e:
            logger.error(f"Error transitioning campaign {campaign_id}: {e}")
            raise

    async def update_campaign(self, campaign_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update campaign fields"""
        try:
            if not updates:
                return await self.get_campaign(campaign_id)

            set_clauses = []
            params: List[Any] = [campaign_id]
            for field_name, value in updates.items():
                if field_name in JSON_FIELDS:
                    params.append(json.dumps(value))
                    set_clauses.append(f"{field_name} = ${len(params)}::jsonb")
                else:
                    params.append(value)
                    set_clauses.append(f"{field_name} = ${len(params)}")
            params.append(datetime.now(timezone.utc))
            set_clauses.append(f"updated_at = ${len(params)}")

            row = await self.db.pool.fetchrow(
                f'''
                UPDATE {self.tables.campaigns}
                SET {", ".join(set_clauses)}
                WHERE campaign_id = $1
                RETURNING *
                ''',
                *params,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error updating campaign {campaign_id}: {e}")
            raise

    async def list_campaigns(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """List campaigns, newest first"""
        try:
            rows = await self.db.pool.fetch(
                f'''
                SELECT * FROM {self.tables.campaigns}
                WHERE ($1::varchar IS NULL OR status = $1)
                ORDER BY created_at DESC
                ''',
                status,
            )
            return [_row_to_dict(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing campaigns: {e}")
            raise

    async def list_campaigns_ready_to_expire(self, now: datetime) -> List[Dict[str, Any]]:
        """Distributed campaigns past expiry with no active allocations left"""
        try:
            rows = await self.db.pool.fetch(
                f'''
                SELECT c.* FROM {self.tables.campaigns} c
                WHERE c.status = 'distributed'
                  AND c.expires_at IS NOT NULL
                  AND c.expires_at <= $1
                  AND NOT EXISTS (
                      SELECT 1 FROM {self.tables.allocations} a
                      WHERE a.campaign_id = c.campaign_id AND a.is_active
                  )
                ''',
                now,
            )
            return [_row_to_dict(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing campaigns ready to expire: {e}")
            raise

    # ====================
    # Operation Costs
    # ====================

    async def get_operation_cost(self, operation_code: str, tenant_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Tenant row first, then the global row"""
        try:
            row = await self.db.pool.fetchrow(
                f'''
                SELECT * FROM {self.tables.operation_costs}
                WHERE operation_code = $1
                  AND is_active
                  AND (tenant_id IS NULL OR tenant_id = $2)
                ORDER BY tenant_id NULLS LAST
                LIMIT 1
                ''',
                operation_code, tenant_id,
            )
            return _row_to_dict(row) if row else None

        except Exception as e:
            logger.error(f"Error getting operation cost {operation_code} for {tenant_id}: {e}")
            raise

    async def upsert_operation_cost(self, cost_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create or replace the price of (operation_code, tenant_id)"""
        try:
            now = datetime.now(timezone.utc)
            row = await self.db.pool.fetchrow(
                f'''
                INSERT INTO {self.tables.operation_costs} (
                    operation_code, tenant_id, credit_cost, unit, is_active, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, TRUE, $5, $5)
                ON CONFLICT (operation_code, COALESCE(tenant_id, '')) DO UPDATE
                SET credit_cost = EXCLUDED.credit_cost,
                    unit = EXCLUDED.unit,
                    is_active = TRUE,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                ''',
                cost_data["operation_code"],
                cost_data.get("tenant_id"),
                cost_data["credit_cost"],
                cost_data.get("unit", "operation"),
                now,
            )
            logger.info(
                f"Operation {cost_data['operation_code']} priced at {cost_data['credit_cost']} "
                f"({cost_data.get('tenant_id') or 'global'})"
            )
            return _row_to_dict(row)

        except Exception as e:
            logger.error(f"Error setting operation cost {cost_data.get('operation_code')}: {e}", exc_info=True)
            raise

    # ====================
    # Reconciliation
    # ====================

    async def create_reconciliation_flag(
        self, record_type: str, record_id: str, reason: str, details: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Flag a record for manual reconciliation"""
        try:
            row = await self.db.pool.fetchrow(
                f'''
                INSERT INTO {self.tables.flags} (flag_id, record_type, record_id, reason, details, created_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                RETURNING *
                ''',
                f"recon_{uuid.uuid4().hex[:20]}",
                record_type,
                record_id,
                reason[:500],
                json.dumps(details or {}, default=str),
                datetime.now(timezone.utc),
            )
            logger.warning(f"Flagged {record_type} {record_id} for reconciliation: {reason}")
            return _row_to_dict(row)

        except Exception as e:
            logger.error(f"Error flagging {record_type} {record_id}: {e}", exc_info=True)
            raise


__all__ = ["CreditLedgerRepository", "PostgresLedgerUnitOfWork"]
