"""
Activity name bases shared by activity registrations and workflow proxies.

Kept in a module of their own so the proxies, which are imported inside
the workflow sandbox, never import the asyncpg-backed activity classes.
"""

ORDER_ACTIVITY_BASE = "checkout.order_repo.postgresql"
AUDIT_ACTIVITY_BASE = "checkout.audit_log.logging"

__all__ = [
    "ORDER_ACTIVITY_BASE",
    "AUDIT_ACTIVITY_BASE",
]
