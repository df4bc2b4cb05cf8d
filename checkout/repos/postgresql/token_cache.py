"""
PostgreSQL implementation of TokenCache.

Provider access tokens live in one row per provider so every API process
reuses the same token instead of fetching its own.
"""

import logging
from typing import Any, Dict, Optional

from asyncpg import Pool

from checkout.repositories import TokenCache

logger = logging.getLogger(__name__)


class PostgreSQLTokenCache(TokenCache):
    def __init__(self, pool: Pool):
        self.pool = pool
        logger.debug("Initialized PostgreSQLTokenCache")

    async def get_token(self, name: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT access_token, expires_at
                FROM gateway_tokens
                WHERE name = $1
                """,
                name,
            )
        if row is None:
            return None
        return {
            "access_token": row["access_token"],
            "expires_at": row["expires_at"],
        }

    async def put_token(
        self, name: str, access_token: str, expires_at: float
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO gateway_tokens (name, access_token, expires_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (name)
                DO UPDATE SET
                    access_token = EXCLUDED.access_token,
                    expires_at = EXCLUDED.expires_at
                """,
                name,
                access_token,
                expires_at,
            )
        logger.debug(
            "Stored gateway token",
            extra={"token_name": name, "expires_at": expires_at},
        )

    async def invalidate(self, name: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM gateway_tokens WHERE name = $1", name
            )
