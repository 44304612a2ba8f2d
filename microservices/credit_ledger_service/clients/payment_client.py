"""
Payment Service HTTP Client

Confirms that a payment referenced by an idempotency key was captured
before credits are added for it. Transport failures are retried with
tenacity and surface as ExternalDependencyError once retries run out.
Implements PaymentConfirmationProtocol for dependency injection.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config.service_config import ServiceConfig

from ..protocols import ExternalDependencyError

logger = logging.getLogger(__name__)

CAPTURED_STATUSES = {"succeeded", "captured", "completed", "paid"}


class _RetryableStatus(Exception):
    """5xx from payment_service"""


class PaymentConfirmationClient:
    """Async HTTP client for payment_service"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        config: Optional[ServiceConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_attempts: Optional[int] = None,
        retry_wait_multiplier: float = 1,
    ):
        """
        Initialize PaymentConfirmationClient

        Args:
            base_url: Base URL for payment_service (defaults to config)
            config: ServiceConfig for URL, timeout and retry attempts
            http_client: Preconfigured httpx client (optional)
            retry_attempts: Attempts before giving up (defaults to config)
            retry_wait_multiplier: Exponential backoff multiplier in seconds
        """
        if config is None:
            config = ServiceConfig.from_env()
        self.base_url = (base_url or config.payment_service_url).rstrip("/")
        self.client = http_client or httpx.AsyncClient(timeout=config.request_timeout)
        self.retry_attempts = retry_attempts or config.payment_retry_attempts
        self.retry_wait_multiplier = retry_wait_multiplier
        logger.info(f"PaymentConfirmationClient initialized with base_url: {self.base_url}")

    async def get_payment(self, payment_reference: str) -> Optional[Dict[str, Any]]:
        """
        Get payment from payment_service

        Returns:
            Payment data or None if not found

        Raises:
            ExternalDependencyError: If payment_service is unavailable after retries
        """

        @retry(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, min=0, max=10),
            retry=retry_if_exception_type((httpx.RequestError, _RetryableStatus)),
            reraise=True,
        )
        async def _fetch() -> Optional[Dict[str, Any]]:
            response = await self.client.get(
                f"{self.base_url}/api/v1/payments/{payment_reference}",
                headers={"X-Internal-Call": "true"},
            )
            if response.status_code == 404:
                return None
            if response.status_code >= 500:
                raise _RetryableStatus(f"payment_service returned {response.status_code}")
            response.raise_for_status()
            return response.json()

        try:
            return await _fetch()
        except (httpx.RequestError, _RetryableStatus) as e:
            logger.error(f"Payment lookup for {payment_reference} failed after {self.retry_attempts} attempts: {e}")
            raise ExternalDependencyError(
                f"payment_service unavailable: {e}", service="payment_service"
            ) from e
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error getting payment {payment_reference}: {e.response.status_code}")
            raise ExternalDependencyError(
                f"payment_service returned {e.response.status_code}", service="payment_service"
            ) from e

    async def confirm_payment(self, payment_reference: str, tenant_id: str, amount: int) -> bool:
        """
        Check that a payment was captured for this tenant and amount

        Returns:
            True if confirmed, False if unknown or mismatched
        """
        payment = await self.get_payment(payment_reference)
        if payment is None:
            logger.info(f"Payment not found: {payment_reference}")
            return False

        status = str(payment.get("status", "")).lower()
        if status not in CAPTURED_STATUSES:
            logger.info(f"Payment {payment_reference} not captured (status={status})")
            return False
        if payment.get("tenant_id") not in (None, tenant_id):
            logger.warning(f"Payment {payment_reference} belongs to another tenant")
            return False
        credits = payment.get("credits", payment.get("credit_amount"))
        if credits is not None and int(credits) != amount:
            logger.warning(f"Payment {payment_reference} covers {credits} credits, not {amount}")
            return False
        return True

    async def close(self):
        """Close the HTTP client connection"""
        await self.client.aclose()
        logger.info("PaymentConfirmationClient connection closed")
