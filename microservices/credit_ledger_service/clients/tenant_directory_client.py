"""
Tenant Service HTTP Client

Async client for the tenant directory: active tenants and each tenant's
primary organization. Lookups are cached in an injected TTLCache.
Implements TenantDirectoryProtocol for dependency injection.
"""

import logging
from typing import List, Optional

import httpx

from core.cache import TTLCache
from core.config.service_config import ServiceConfig

from ..protocols import ExternalDependencyError

logger = logging.getLogger(__name__)

ACTIVE_TENANTS_KEY = "tenants:active"


class TenantDirectoryClient:
    """Async HTTP client for tenant_service"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        cache: Optional[TTLCache] = None,
        config: Optional[ServiceConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize TenantDirectoryClient

        Args:
            base_url: Base URL for tenant_service (defaults to config)
            cache: TTL cache for lookups (one is created from config if not provided)
            config: ServiceConfig for URL, timeout and cache TTL
            http_client: Preconfigured httpx client (optional)
        """
        if config is None:
            config = ServiceConfig.from_env()
        self.base_url = (base_url or config.tenant_service_url).rstrip("/")
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=config.tenant_cache_ttl_seconds)
        self.client = http_client or httpx.AsyncClient(timeout=config.request_timeout)
        logger.info(f"TenantDirectoryClient initialized with base_url: {self.base_url}")

    async def list_active_tenants(self) -> List[str]:
        """
        Get all active tenant IDs

        Returns:
            List of tenant IDs

        Raises:
            ExternalDependencyError: If tenant_service cannot be reached
        """
        cached = self.cache.get(ACTIVE_TENANTS_KEY)
        if cached is not None:
            return list(cached)

        try:
            response = await self.client.get(
                f"{self.base_url}/api/v1/tenants",
                params={"status": "active"},
                headers={"X-Internal-Call": "true"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error listing active tenants: {e.response.status_code}")
            raise ExternalDependencyError(
                f"tenant_service returned {e.response.status_code}", service="tenant_service"
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Request error listing active tenants: {e}")
            raise ExternalDependencyError(f"tenant_service unreachable: {e}", service="tenant_service") from e

        items = payload.get("tenants", payload) if isinstance(payload, dict) else payload
        tenant_ids = [
            item["tenant_id"] if isinstance(item, dict) else str(item)
            for item in items or []
        ]
        self.cache.set(ACTIVE_TENANTS_KEY, tenant_ids)
        logger.debug(f"Loaded {len(tenant_ids)} active tenants")
        return list(tenant_ids)

    async def get_primary_entity(self, tenant_id: str) -> Optional[str]:
        """
        Get the tenant's primary organization entity

        Args:
            tenant_id: Tenant identifier

        Returns:
            Entity ID or None if the tenant has none

        Raises:
            ExternalDependencyError: If tenant_service cannot be reached
        """
        key = f"tenants:{tenant_id}:primary_entity"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            response = await self.client.get(
                f"{self.base_url}/api/v1/tenants/{tenant_id}/primary-organization",
                headers={"X-Internal-Call": "true"},
            )
            if response.status_code == 404:
                logger.info(f"No primary organization for tenant: {tenant_id}")
                return None
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error getting primary entity for {tenant_id}: {e.response.status_code}")
            raise ExternalDependencyError(
                f"tenant_service returned {e.response.status_code}", service="tenant_service"
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Request error getting primary entity for {tenant_id}: {e}")
            raise ExternalDependencyError(f"tenant_service unreachable: {e}", service="tenant_service") from e

        entity_id = data.get("entity_id") or data.get("organization_id")
        if entity_id:
            self.cache.set(key, entity_id)
        return entity_id

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        """Drop cached lookups for one tenant, or everything"""
        if tenant_id is None:
            self.cache.clear()
            return
        self.cache.invalidate(f"tenants:{tenant_id}:primary_entity")
        self.cache.invalidate(ACTIVE_TENANTS_KEY)

    async def close(self):
        """Close the HTTP client connection"""
        await self.client.aclose()
        logger.info("TenantDirectoryClient connection closed")
