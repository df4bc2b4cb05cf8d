"""PostgreSQL implementations of checkout repositories."""

from importlib import resources

from asyncpg import Pool

from .order import PostgreSQLOrderRepository
from .stock import PostgreSQLStockLedger
from .token_cache import PostgreSQLTokenCache


async def apply_schema(pool: Pool) -> None:
    """Create tables and indexes if they do not exist yet."""
    schema = resources.files(__package__).joinpath("schema.sql").read_text()
    async with pool.acquire() as conn:
        await conn.execute(schema)


__all__ = [
    "PostgreSQLOrderRepository",
    "PostgreSQLStockLedger",
    "PostgreSQLTokenCache",
    "apply_schema",
]
