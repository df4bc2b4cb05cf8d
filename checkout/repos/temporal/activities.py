"""
Temporal activity wrappers for checkout repositories.

The worker instantiates these with real backends and registers their
methods; workflows reach them through the proxies in ``proxies.py``.
"""

from checkout.repos.memory.collaborators import LoggingAuditLog
from checkout.repos.postgresql.order import PostgreSQLOrderRepository
from .activity_names import AUDIT_ACTIVITY_BASE, ORDER_ACTIVITY_BASE
from .decorators import temporal_activity_registration


@temporal_activity_registration(ORDER_ACTIVITY_BASE)
class TemporalPostgreSQLOrderRepository(PostgreSQLOrderRepository):
    """Temporal activity wrapper for PostgreSQLOrderRepository."""

    pass


@temporal_activity_registration(AUDIT_ACTIVITY_BASE)
class TemporalLoggingAuditLog(LoggingAuditLog):
    """Temporal activity wrapper for LoggingAuditLog."""

    pass


__all__ = [
    "TemporalPostgreSQLOrderRepository",
    "TemporalLoggingAuditLog",
]
