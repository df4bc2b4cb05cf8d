"""
Memory implementation of TokenCache.

Only correct within a single process; deployments with more than one API
instance should use the PostgreSQL token cache instead.
"""

import logging
from typing import Any, Dict, Optional

from checkout.repositories import TokenCache

logger = logging.getLogger(__name__)


class MemoryTokenCache(TokenCache):
    def __init__(self) -> None:
        self.tokens: Dict[str, Dict[str, Any]] = {}

    async def get_token(self, name: str) -> Optional[Dict[str, Any]]:
        token = self.tokens.get(name)
        return dict(token) if token else None

    async def put_token(
        self, name: str, access_token: str, expires_at: float
    ) -> None:
        self.tokens[name] = {
            "access_token": access_token,
            "expires_at": expires_at,
        }
        logger.debug(
            "MemoryTokenCache: token stored",
            extra={"token_name": name, "expires_at": expires_at},
        )

    async def invalidate(self, name: str) -> None:
        self.tokens.pop(name, None)
