"""
Fire-and-forget helpers for audit and outbound collaborators.

A failure in any of these must never fail an otherwise successful payment
operation, so every call is caught, logged and dropped here.
"""

import logging
from typing import Any, Awaitable, Dict, Optional

from checkout.repositories import AuditCategory, AuditLog

logger = logging.getLogger(__name__)


async def record_audit(
    audit_log: Optional[AuditLog],
    category: AuditCategory,
    action: str,
    details: Dict[str, Any],
) -> None:
    if audit_log is None:
        logger.info(
            action, extra={"audit_category": category, "details": details}
        )
        return
    try:
        await audit_log.record(category, action, details)
    except Exception as e:
        logger.error(
            "Failed to record audit event",
            extra={
                "audit_action": action,
                "error_type": type(e).__name__,
                "error_message": str(e),
            },
            exc_info=True,
        )


async def fire_and_forget(
    label: str, call: Awaitable[Any], order_id: Optional[str] = None
) -> bool:
    """Await a collaborator call, logging and swallowing any failure.

    Returns:
        True if the call completed, False if it raised.
    """
    try:
        await call
        return True
    except Exception as e:
        logger.error(
            f"{label} failed",
            extra={
                "order_id": order_id,
                "error_type": type(e).__name__,
                "error_message": str(e),
            },
            exc_info=True,
        )
        return False
