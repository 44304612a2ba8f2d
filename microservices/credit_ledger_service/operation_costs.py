"""
Operation Cost Resolver

Prices an operation code for a tenant: the tenant's own row wins over the
global row, and an unpriced code costs the configured default. Resolved
prices are cached in an injected TTLCache and dropped when a price is set.
Implements OperationCostResolverProtocol.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from core.cache import TTLCache

from .models import (
    OperationCost,
    OperationCostResult,
    OperationCostSourceEnum,
    ResultReasonEnum,
    SetOperationCostRequest,
)
from .protocols import LedgerRepositoryProtocol

logger = logging.getLogger(__name__)


def _cache_key(operation_code: str, tenant_id: Optional[str]) -> str:
    return f"operation_costs:{operation_code}:{tenant_id or '*'}"


class OperationCostResolver:
    """Tenant override, then global price, then the default"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        cache: Optional[TTLCache] = None,
        default_cost: int = 1,
    ):
        if default_cost <= 0:
            raise ValueError("default_cost must be positive")
        self.repository = repository
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=300)
        self.default_cost = default_cost

    async def resolve(self, operation_code: str, tenant_id: Optional[str] = None) -> OperationCost:
        key = _cache_key(operation_code, tenant_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        row = await self.repository.get_operation_cost(operation_code, tenant_id)
        if row:
            cost = OperationCost(
                operation_code=operation_code,
                credit_cost=row["credit_cost"],
                unit=row.get("unit") or "operation",
                tenant_id=row.get("tenant_id"),
                source=OperationCostSourceEnum.TENANT if row.get("tenant_id") else OperationCostSourceEnum.GLOBAL,
                updated_at=row.get("updated_at"),
            )
        else:
            cost = OperationCost(
                operation_code=operation_code,
                credit_cost=self.default_cost,
                tenant_id=tenant_id,
                source=OperationCostSourceEnum.DEFAULT,
            )
            logger.debug(f"No price for {operation_code}; using default {self.default_cost}")

        self.cache.set(key, cost)
        return cost

    async def set_cost(
        self,
        operation_code: str,
        credit_cost: int,
        tenant_id: Optional[str] = None,
        unit: str = "operation",
    ) -> OperationCostResult:
        """
        Price an operation globally, or for one tenant.

        Returns:
            OperationCostResult; a bad price is a validation_error result
        """
        try:
            request = SetOperationCostRequest(
                operation_code=operation_code,
                credit_cost=credit_cost,
                unit=unit,
                tenant_id=tenant_id,
            )
        except ValidationError as e:
            return OperationCostResult(
                ok=False,
                reason=ResultReasonEnum.VALIDATION_ERROR,
                message=f"Invalid operation cost: {e}",
            )

        row = await self.repository.upsert_operation_cost(request.model_dump())
        self.invalidate(request.operation_code, request.tenant_id)
        return OperationCostResult(
            ok=True,
            cost=OperationCost(
                operation_code=request.operation_code,
                credit_cost=row["credit_cost"],
                unit=row.get("unit") or request.unit,
                tenant_id=row.get("tenant_id"),
                source=OperationCostSourceEnum.TENANT if request.tenant_id else OperationCostSourceEnum.GLOBAL,
                updated_at=row.get("updated_at"),
            ),
        )

    def invalidate(self, operation_code: Optional[str] = None, tenant_id: Optional[str] = None) -> None:
        # A global price backs every tenant without an override
        if operation_code is None or tenant_id is None:
            self.cache.clear()
            return
        self.cache.invalidate(_cache_key(operation_code, tenant_id))


__all__ = ["OperationCostResolver"]
