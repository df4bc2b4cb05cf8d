"""
Idempotency guard for order creation.

A caller-supplied key is scoped per payment method (``{method}_{key}``),
so one checkout attempt can be retried against the same gateway without a
second order, and can also switch gateways mid-checkout. Switching cancels
whatever the previous gateway left in flight under the same caller key.
"""

import logging
from typing import List, Optional

from checkout.audit import record_audit
from checkout.domain import composite_key
from checkout.errors import DuplicateAttempt
from checkout.repositories import AuditLog, OrderRepository

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "superseded_by_other_gateway"


class IdempotencyGuard:
    def __init__(
        self,
        order_repo: OrderRepository,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self.order_repo = order_repo
        self.audit_log = audit_log

    async def register_attempt(
        self, payment_method: str, caller_key: str
    ) -> str:
        """Claim a checkout attempt and return its composite key.

        The duplicate check runs before anything else; no stock or gateway
        side effect happens for a key that is already taken.

        Raises:
            DuplicateAttempt: if an order already holds the composite key
        """
        key = composite_key(payment_method, caller_key)
        existing = await self.order_repo.get_by_idempotency_key(key)
        if existing is not None:
            await record_audit(
                self.audit_log,
                "warn",
                "DUPLICATE_ORDER_ATTEMPT",
                {
                    "orderId": existing.order_id,
                    "idempotencyKey": key,
                    "existingStatus": existing.order_status,
                },
            )
            raise DuplicateAttempt(
                existing.order_id,
                existing.order_status,
                existing.payment_status,
            )

        await self.supersede(caller_key, keep_method=payment_method)
        return key

    async def supersede(
        self, caller_key: str, keep_method: Optional[str] = None
    ) -> List[str]:
        """Cancel in-flight gateway attempts under ``caller_key`` that use a
        method other than ``keep_method``.

        Only Pending/Pending gateway-mediated orders are touched; deferred
        settlement orders are real orders and stay. Each cancellation
        restores stock only if it wins the conditional transition. Errors
        are logged per order and never fail the caller.

        Returns:
            Identifiers of the orders this call canceled
        """
        canceled: List[str] = []
        orders = await self.order_repo.find_by_caller_key(caller_key)
        for order in orders:
            if order.payment_method == keep_method:
                continue
            if not order.is_gateway_mediated:
                continue
            if (
                order.payment_status != "Pending"
                or order.order_status != "Pending"
            ):
                continue
            try:
                result = await self.order_repo.cancel_pending(
                    order.order_id, SUPERSEDED_REASON
                )
            except Exception as e:
                logger.error(
                    "Failed to cancel superseded order",
                    extra={
                        "order_id": order.order_id,
                        "caller_key": caller_key,
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    },
                    exc_info=True,
                )
                continue
            if result is None:
                continue
            canceled.append(order.order_id)
            await record_audit(
                self.audit_log,
                "info",
                "ORDER_SUPERSEDED",
                {
                    "orderId": order.order_id,
                    "paymentMethod": order.payment_method,
                    "replacedBy": keep_method,
                },
            )

        if canceled:
            logger.info(
                "Superseded pending orders canceled",
                extra={"caller_key": caller_key, "order_ids": canceled},
            )
        return canceled
