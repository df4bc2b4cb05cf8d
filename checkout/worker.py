"""
Temporal worker for checkout maintenance workflows.

Hosts AutoCancelWorkflow and the activities its repository proxies call.
Activities run against PostgreSQL, so this worker needs ``DATABASE_URL``.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Sequence, cast

import asyncpg
from temporalio.client import Client
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.service import RPCError
from temporalio.worker import Worker

from .config import Settings, setup_logging
from .repos.postgresql import apply_schema
from .repos.temporal.activities import (
    TemporalLoggingAuditLog,
    TemporalPostgreSQLOrderRepository,
)
from .repos.temporal.decorators import protocol_methods
from .workflows import AutoCancelWorkflow

logger = logging.getLogger(__name__)


async def get_temporal_client_with_retries(
    endpoint: str, attempts: int = 10, delay: int = 5
) -> Client:
    """Attempt to connect to Temporal with retries."""
    for attempt in range(attempts):
        try:
            client = await Client.connect(
                endpoint,
                namespace="default",
                data_converter=pydantic_data_converter,
            )
            logger.info(
                "Connected to Temporal",
                extra={"endpoint": endpoint, "attempt": attempt + 1},
            )
            return client
        except RPCError as e:
            logger.warning(
                "Failed to connect to Temporal",
                extra={
                    "endpoint": endpoint,
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "error": str(e),
                    "retry_in_seconds": delay,
                },
            )
            if attempt + 1 == attempts:
                logger.error(
                    "All connection attempts to Temporal failed",
                    extra={"endpoint": endpoint, "total_attempts": attempts},
                )
                raise
            await asyncio.sleep(delay)

    raise RuntimeError("Unexpected exit from retry loop")


def collect_activities(*repositories: Any) -> list:
    """Bound activity methods for every protocol method of each repo."""
    activities = []
    for repo in repositories:
        for name in protocol_methods(type(repo)):
            activities.append(getattr(repo, name))
    return activities


async def run_worker(settings: Optional[Settings] = None) -> None:
    setup_logging()
    settings = settings or Settings.from_env()

    logger.info(
        "Starting checkout worker",
        extra={
            "temporal_endpoint": settings.temporal_endpoint,
            "task_queue": settings.task_queue,
        },
    )

    pool = await asyncpg.create_pool(settings.database_url)
    await apply_schema(pool)
    client = await get_temporal_client_with_retries(
        settings.temporal_endpoint
    )

    activities = collect_activities(
        TemporalPostgreSQLOrderRepository(pool),
        TemporalLoggingAuditLog(),
    )

    worker = Worker(
        client,
        task_queue=settings.task_queue,
        workflows=[AutoCancelWorkflow],
        activities=cast(Sequence[Callable[..., Any]], activities),
    )

    logger.info(
        "Worker created",
        extra={"activity_count": len(activities)},
    )
    try:
        await worker.run()
    finally:
        await pool.close()


def main() -> None:
    """Entry point for the checkout worker."""
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
