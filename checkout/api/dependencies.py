"""
Dependency injection for FastAPI endpoints.

The container builds one set of repositories, gateway adapters and use
cases per process. Storage is chosen by ``CHECKOUT_STORAGE``: ``memory``
for local development, ``postgresql`` for deployments. Tests replace the
``get_*`` functions through ``app.dependency_overrides``.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncpg
import httpx

from checkout.config import Settings
from checkout.errors import ConfigurationError
from checkout.gateways import PhonePeAdapter, RazorpayAdapter, RetryPolicy
from checkout.repos.memory import (
    LoggingAuditLog,
    LoggingEmailService,
    LoggingNotificationService,
    MemoryOrderRepository,
    MemoryStockLedger,
    MemoryStore,
    MemoryTokenCache,
    PlainTextInvoiceService,
    StaticSellerDirectory,
)
from checkout.repos.postgresql import (
    PostgreSQLOrderRepository,
    PostgreSQLStockLedger,
    PostgreSQLTokenCache,
    apply_schema,
)
from checkout.repositories import (
    AuditLog,
    GatewayAdapter,
    OrderRepository,
    StockLedger,
    TokenCache,
)
from checkout.sweeper import LocalSweeperController
from checkout.usecase import (
    AutoCancelUseCase,
    GetOrderUseCase,
    OrderReconciliationUseCase,
    RefundUseCase,
    ReverifyPresumptiveUseCase,
)

logger = logging.getLogger(__name__)

DEFAULT_BUNDLE_SECRET = "change-me"
HTTP_TIMEOUT_MARGIN_SECONDS = 5.0


class DependencyContainer:
    """
    Dependency injection container with singleton lifecycle management.
    Always creates real clients; mocks are provided by test overrides.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings
        self._instances: Dict[str, Any] = {}

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
        return self._settings

    async def get_or_create(
        self, key: str, factory: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Get or create a singleton instance."""
        if key not in self._instances:
            self._instances[key] = await factory()
        return self._instances[key]

    # Infrastructure

    async def _create_pool(self) -> asyncpg.Pool:
        settings = self.settings
        if settings.bundle_secret == DEFAULT_BUNDLE_SECRET:
            raise ConfigurationError(
                "BUNDLE_SECRET must be set when running against PostgreSQL."
            )
        logger.debug("Creating PostgreSQL pool")
        pool = await asyncpg.create_pool(settings.database_url)
        await apply_schema(pool)
        return pool

    async def _create_memory_store(self) -> MemoryStore:
        logger.warning(
            "Using in-memory storage; orders are lost on restart"
        )
        return MemoryStore()

    async def _create_http_client(self) -> httpx.AsyncClient:
        # Per-operation budgets are enforced by the adapters; the client
        # timeout only backstops them.
        settings = self.settings
        budget = max(
            settings.create_intent_timeout_seconds,
            settings.status_check_timeout_seconds,
        )
        return httpx.AsyncClient(
            timeout=httpx.Timeout(budget + HTTP_TIMEOUT_MARGIN_SECONDS)
        )

    async def get_http_client(self) -> httpx.AsyncClient:
        client = await self.get_or_create(
            "http_client", self._create_http_client
        )
        return client  # type: ignore[no-any-return]

    # Repositories

    async def get_order_repository(self) -> OrderRepository:
        async def create() -> OrderRepository:
            if self.settings.storage == "postgresql":
                pool = await self.get_or_create("pool", self._create_pool)
                return PostgreSQLOrderRepository(pool)
            store = await self.get_or_create(
                "memory_store", self._create_memory_store
            )
            return MemoryOrderRepository(store)

        return await self.get_or_create(  # type: ignore[no-any-return]
            "order_repo", create
        )

    async def get_stock_ledger(self) -> StockLedger:
        async def create() -> StockLedger:
            if self.settings.storage == "postgresql":
                pool = await self.get_or_create("pool", self._create_pool)
                return PostgreSQLStockLedger(pool)
            store = await self.get_or_create(
                "memory_store", self._create_memory_store
            )
            return MemoryStockLedger(store)

        return await self.get_or_create(  # type: ignore[no-any-return]
            "stock_ledger", create
        )

    async def get_token_cache(self) -> TokenCache:
        async def create() -> TokenCache:
            if self.settings.storage == "postgresql":
                pool = await self.get_or_create("pool", self._create_pool)
                return PostgreSQLTokenCache(pool)
            return MemoryTokenCache()

        return await self.get_or_create(  # type: ignore[no-any-return]
            "token_cache", create
        )

    async def get_audit_log(self) -> AuditLog:
        async def create() -> AuditLog:
            return LoggingAuditLog()

        return await self.get_or_create(  # type: ignore[no-any-return]
            "audit_log", create
        )

    # Gateways

    async def _create_gateways(self) -> List[GatewayAdapter]:
        settings = self.settings
        client = await self.get_http_client()
        common: Dict[str, Any] = {
            "create_timeout_seconds": settings.create_intent_timeout_seconds,
            "status_timeout_seconds": settings.status_check_timeout_seconds,
            "retry_policy": RetryPolicy(
                max_retries=settings.gateway_max_retries
            ),
        }
        gateways: List[GatewayAdapter] = []

        if settings.razorpay_key_id:
            gateways.append(
                RazorpayAdapter(
                    client,
                    key_id=settings.razorpay_key_id,
                    key_secret=settings.razorpay_key_secret,
                    webhook_secret=settings.razorpay_webhook_secret,
                    base_url=settings.razorpay_base_url,
                    currency=settings.currency,
                    **common,
                )
            )
        else:
            logger.warning("RAZORPAY_KEY_ID not set; card/UPI disabled")

        if settings.phonepe_client_id:
            gateways.append(
                PhonePeAdapter(
                    client,
                    client_id=settings.phonepe_client_id,
                    client_secret=settings.phonepe_client_secret,
                    client_version=settings.phonepe_client_version,
                    base_url=settings.phonepe_base_url,
                    auth_url=settings.phonepe_auth_url,
                    salt_key=settings.phonepe_salt_key,
                    salt_index=settings.phonepe_salt_index,
                    backend_url=settings.backend_url,
                    token_cache=await self.get_token_cache(),
                    **common,
                )
            )
        else:
            logger.warning("PHONEPE_CLIENT_ID not set; wallet disabled")

        logger.info(
            "Payment gateways configured",
            extra={"gateways": [g.method for g in gateways]},
        )
        return gateways

    async def get_gateways(self) -> List[GatewayAdapter]:
        gateways = await self.get_or_create(
            "gateways", self._create_gateways
        )
        return gateways  # type: ignore[no-any-return]

    # Use cases

    async def get_reconciliation_use_case(
        self,
    ) -> OrderReconciliationUseCase:
        async def create() -> OrderReconciliationUseCase:
            settings = self.settings
            return OrderReconciliationUseCase(
                order_repo=await self.get_order_repository(),
                stock_ledger=await self.get_stock_ledger(),
                gateways=await self.get_gateways(),
                audit_log=await self.get_audit_log(),
                bundle_secret=settings.bundle_secret,
                bundle_max_age_seconds=settings.bundle_max_age_seconds,
                presume_success_on_return_timeout=(
                    settings.presume_success_on_return_timeout
                ),
                email_service=LoggingEmailService(),
                notification_service=LoggingNotificationService(),
                invoice_service=PlainTextInvoiceService(),
                seller_directory=StaticSellerDirectory(),
            )

        return await self.get_or_create(  # type: ignore[no-any-return]
            "reconciliation", create
        )

    async def get_refund_use_case(self) -> RefundUseCase:
        async def create() -> RefundUseCase:
            return RefundUseCase(
                order_repo=await self.get_order_repository(),
                gateways=await self.get_gateways(),
                audit_log=await self.get_audit_log(),
            )

        return await self.get_or_create(  # type: ignore[no-any-return]
            "refunds", create
        )

    async def get_sweeper(self) -> LocalSweeperController:
        async def create() -> LocalSweeperController:
            use_case = AutoCancelUseCase(
                order_repo=await self.get_order_repository(),
                audit_log=await self.get_audit_log(),
            )
            return LocalSweeperController(
                use_case,
                interval_minutes=self.settings.auto_cancel_interval_minutes,
                timeout_minutes=self.settings.auto_cancel_timeout_minutes,
            )

        return await self.get_or_create(  # type: ignore[no-any-return]
            "sweeper", create
        )

    async def close(self) -> None:
        """Stop background work and release connections."""
        sweeper = self._instances.get("sweeper")
        if sweeper is not None:
            await sweeper.stop()
        client = self._instances.get("http_client")
        if client is not None:
            await client.aclose()
        pool = self._instances.get("pool")
        if pool is not None:
            await pool.close()
        self._instances.clear()


# Global container instance
_container = DependencyContainer()


def get_container() -> DependencyContainer:
    return _container


async def get_settings() -> Settings:
    """FastAPI dependency for process settings."""
    return _container.settings


async def get_reconciliation_use_case() -> OrderReconciliationUseCase:
    """FastAPI dependency for OrderReconciliationUseCase."""
    return await _container.get_reconciliation_use_case()


async def get_refund_use_case() -> RefundUseCase:
    """FastAPI dependency for RefundUseCase."""
    return await _container.get_refund_use_case()


async def get_order_query_use_case() -> GetOrderUseCase:
    """FastAPI dependency for GetOrderUseCase."""
    return GetOrderUseCase(order_repo=await _container.get_order_repository())


async def get_reverify_use_case() -> ReverifyPresumptiveUseCase:
    """FastAPI dependency for ReverifyPresumptiveUseCase."""
    return ReverifyPresumptiveUseCase(
        order_repo=await _container.get_order_repository(),
        gateways=await _container.get_gateways(),
        audit_log=await _container.get_audit_log(),
    )


async def get_sweeper_controller() -> LocalSweeperController:
    """FastAPI dependency for the in-process auto-cancel sweeper."""
    return await _container.get_sweeper()
