"""
Shared HTTP plumbing for payment gateway adapters.

Each adapter implements the provider-specific ``_create_intent``,
``_check_status`` and ``_refund`` hooks; this base class wraps them with the
behaviour every provider call must have:

- a hard client-side timeout per operation (15 s for intent creation, 30 s
  for status checks by default), independent of the provider's own
  timeout, so a provider that accepts a request and never answers cannot
  hold the caller open indefinitely;
- at most ``max_retries`` retries for transient failures (network errors,
  HTTP 502/503/504/522/524) with exponential backoff capped at 5 s;
  transport timeouts surface as GatewayTimeout and are never retried;
- one forced credential refresh and retry on HTTP 401/403, which does not
  count against the transient retry budget.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel

from checkout.domain import GatewayStatus, Order, PaymentIntent, RefundResult
from checkout.errors import GatewayAuthError, GatewayError, GatewayTimeout

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({502, 503, 504, 522, 524})


class RetryPolicy(BaseModel):
    max_retries: int = 1
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        return min(
            self.backoff_base_seconds * (2**attempt),
            self.backoff_max_seconds,
        )


def hmac_sha256_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected.lower(), received.strip().lower())


def new_refund_id(order_id: str) -> str:
    """Refund identifier ``REF_{order_id}_{epoch_ms}_{random}``."""
    return f"REF_{order_id}_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def order_id_from_refund_id(refund_id: str) -> Optional[str]:
    """Order id embedded in an identifier made by ``new_refund_id``."""
    if not refund_id.startswith("REF_"):
        return None
    parts = refund_id[len("REF_") :].rsplit("_", 2)
    if len(parts) != 3 or not parts[0]:
        return None
    return parts[0]


class HttpGateway:
    """Base class for httpx-backed gateway adapters."""

    method: str = ""
    persists_pending_order: bool = False
    supports_token_refresh: bool = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        create_timeout_seconds: float = 15.0,
        status_timeout_seconds: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.create_timeout_seconds = create_timeout_seconds
        self.status_timeout_seconds = status_timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    # Provider hooks

    async def _auth_headers(self, force_refresh: bool) -> Dict[str, str]:
        return {}

    async def _create_intent(self, order: Order) -> PaymentIntent:
        raise NotImplementedError

    async def _check_status(
        self, provider_transaction_id: str
    ) -> GatewayStatus:
        raise NotImplementedError

    async def _refund(
        self,
        provider_transaction_id: str,
        amount_minor_units: int,
        refund_id: str,
        metadata: Dict[str, Any],
    ) -> RefundResult:
        raise NotImplementedError

    async def _refund_status(
        self, refund_id: str, provider_refund_id: Optional[str]
    ) -> RefundResult:
        raise NotImplementedError

    # Public operations

    async def create_intent(self, order: Order) -> PaymentIntent:
        logger.info(
            "Creating payment intent",
            extra={
                "gateway": self.method,
                "order_id": order.order_id,
                "final_total": str(order.final_total),
            },
        )
        try:
            return await asyncio.wait_for(
                self._create_intent(order),
                timeout=self.create_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Payment intent creation timed out",
                extra={
                    "gateway": self.method,
                    "order_id": order.order_id,
                    "timeout_seconds": self.create_timeout_seconds,
                },
            )
            raise GatewayTimeout(
                "Payment provider did not respond in time."
            )

    async def check_status(
        self, provider_transaction_id: str
    ) -> GatewayStatus:
        try:
            status = await asyncio.wait_for(
                self._check_status(provider_transaction_id),
                timeout=self.status_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Payment status check timed out",
                extra={
                    "gateway": self.method,
                    "provider_transaction_id": provider_transaction_id,
                    "timeout_seconds": self.status_timeout_seconds,
                },
            )
            raise GatewayTimeout(
                "Payment provider did not report a status in time."
            )
        logger.debug(
            "Payment status retrieved",
            extra={
                "gateway": self.method,
                "provider_transaction_id": provider_transaction_id,
                "state": status.state,
                "succeeded": status.succeeded,
            },
        )
        return status

    async def refund(
        self,
        provider_transaction_id: str,
        amount_minor_units: int,
        refund_id: str,
        metadata: Dict[str, Any],
    ) -> RefundResult:
        logger.info(
            "Issuing refund",
            extra={
                "gateway": self.method,
                "provider_transaction_id": provider_transaction_id,
                "amount_minor_units": amount_minor_units,
                "refund_id": refund_id,
            },
        )
        try:
            return await asyncio.wait_for(
                self._refund(
                    provider_transaction_id,
                    amount_minor_units,
                    refund_id,
                    metadata,
                ),
                timeout=self.status_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Refund request timed out",
                extra={"gateway": self.method, "refund_id": refund_id},
            )
            raise GatewayTimeout("Refund request timed out.")

    async def refund_status(
        self, refund_id: str, provider_refund_id: Optional[str]
    ) -> RefundResult:
        try:
            result = await asyncio.wait_for(
                self._refund_status(refund_id, provider_refund_id),
                timeout=self.status_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Refund status check timed out",
                extra={"gateway": self.method, "refund_id": refund_id},
            )
            raise GatewayTimeout("Refund status check timed out.")
        logger.info(
            "Refund status retrieved",
            extra={
                "gateway": self.method,
                "refund_id": refund_id,
                "refund_status": result.status,
            },
        )
        return result

    # HTTP with retry

    async def _request(
        self,
        http_method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        attempt = 0
        force_refresh = False
        refreshed = False

        while True:
            headers = (
                await self._auth_headers(force_refresh)
                if authenticated
                else {}
            )
            force_refresh = False
            try:
                response = await self.client.request(
                    http_method, url, json=json, data=data, headers=headers
                )
            except httpx.TimeoutException as e:
                # The provider may already have acted on the request, so a
                # timeout is never retried.
                logger.error(
                    "Gateway request timed out",
                    extra={
                        "gateway": self.method,
                        "url": url,
                        "error_type": type(e).__name__,
                    },
                )
                raise GatewayTimeout(
                    "Payment provider did not respond in time."
                ) from e
            except httpx.TransportError as e:
                if attempt < self.retry_policy.max_retries:
                    delay = self.retry_policy.delay_for(attempt)
                    logger.warning(
                        "Transient gateway error, retrying",
                        extra={
                            "gateway": self.method,
                            "url": url,
                            "attempt": attempt + 1,
                            "error_type": type(e).__name__,
                            "retry_in_seconds": delay,
                        },
                    )
                    attempt += 1
                    await self._sleep(delay)
                    continue
                logger.error(
                    "Gateway unreachable",
                    extra={
                        "gateway": self.method,
                        "url": url,
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    },
                )
                raise GatewayError() from e

            status_code = response.status_code

            if status_code in (401, 403):
                if (
                    authenticated
                    and self.supports_token_refresh
                    and not refreshed
                ):
                    logger.info(
                        "Gateway rejected credentials, refreshing token",
                        extra={"gateway": self.method, "status": status_code},
                    )
                    refreshed = True
                    force_refresh = True
                    continue
                logger.error(
                    "Gateway authentication failed",
                    extra={"gateway": self.method, "status": status_code},
                )
                raise GatewayAuthError(provider_status=status_code)

            if (
                status_code in RETRYABLE_STATUS_CODES
                and attempt < self.retry_policy.max_retries
            ):
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    "Gateway returned retryable status, retrying",
                    extra={
                        "gateway": self.method,
                        "url": url,
                        "status": status_code,
                        "attempt": attempt + 1,
                        "retry_in_seconds": delay,
                    },
                )
                attempt += 1
                await self._sleep(delay)
                continue

            if response.is_error:
                logger.error(
                    "Gateway request failed",
                    extra={
                        "gateway": self.method,
                        "url": url,
                        "status": status_code,
                        "response_body": response.text[:500],
                    },
                )
                raise GatewayError(provider_status=status_code)

            try:
                body = response.json()
            except ValueError as e:
                logger.error(
                    "Gateway returned a non-JSON body",
                    extra={"gateway": self.method, "url": url},
                )
                raise GatewayError() from e
            if not isinstance(body, dict):
                raise GatewayError()
            return body
