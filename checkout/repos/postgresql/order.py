"""
PostgreSQL implementation of OrderRepository.

Each order is stored as a JSONB document next to the columns the
repository filters on. Status changes lock the row with ``SELECT ... FOR
UPDATE`` and write with ``UPDATE ... WHERE payment_status = <expected>``,
in one transaction with any stock movement. Inserts and the Paid
transition also take a transaction-scoped advisory lock on the caller key,
which serialises them per checkout attempt so the "one Paid order per
caller key" check cannot race.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
from asyncpg import Connection, Pool

from checkout.domain import (
    FinalizeOutcome,
    Order,
    PartialRefund,
    RefundDetails,
    quantize_money,
    utcnow,
)
from checkout.errors import DuplicateAttempt, OrderNotFound
from checkout.repositories import OrderRepository
from .stock import deduct_stock, restore_stock

logger = logging.getLogger(__name__)

_INSERT = """
    INSERT INTO orders (
        order_id, id, idempotency_key, caller_key, payment_method,
        payment_status, order_status, merchant_transaction_id,
        transaction_id, presumptive_success, customer_email,
        customer_phone, order_data, created_at, updated_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13,
              $14, $15)
"""

_UPDATE = """
    UPDATE orders SET
        payment_status = $2,
        order_status = $3,
        transaction_id = $4,
        presumptive_success = $5,
        order_data = $6,
        updated_at = $7
    WHERE order_id = $1 AND payment_status = $8
"""


def _parse(row: Optional[asyncpg.Record]) -> Optional[Order]:
    if row is None:
        return None
    return Order.model_validate_json(row["order_data"])


def _parse_all(rows: List[asyncpg.Record]) -> List[Order]:
    return [Order.model_validate_json(row["order_data"]) for row in rows]


async def _lock_caller_key(conn: Connection, caller_key: str) -> None:
    await conn.execute(
        "SELECT pg_advisory_xact_lock(hashtext($1))", caller_key
    )


async def _insert(conn: Connection, order: Order) -> None:
    await conn.execute(
        _INSERT,
        order.order_id,
        order.id,
        order.idempotency_key,
        order.caller_key,
        order.payment_method,
        order.payment_status,
        order.order_status,
        order.merchant_transaction_id,
        order.transaction_id,
        order.presumptive_success,
        (order.customer.email or "").lower() or None,
        order.customer.phone,
        order.model_dump_json(),
        order.created_at,
        order.updated_at,
    )


async def _update(conn: Connection, order: Order, expected: str) -> bool:
    result = await conn.execute(
        _UPDATE,
        order.order_id,
        order.payment_status,
        order.order_status,
        order.transaction_id,
        order.presumptive_success,
        order.model_dump_json(),
        order.updated_at,
        expected,
    )
    return result == "UPDATE 1"


async def _select_for_update(
    conn: Connection, order_id: str
) -> Optional[Order]:
    row = await conn.fetchrow(
        "SELECT order_data FROM orders WHERE order_id = $1 FOR UPDATE",
        order_id,
    )
    return _parse(row)


async def _paid_sibling(conn: Connection, order: Order) -> Optional[Order]:
    row = await conn.fetchrow(
        """
        SELECT order_data FROM orders
        WHERE caller_key = $1 AND payment_status = 'Paid'
          AND order_id <> $2
        LIMIT 1
        """,
        order.caller_key,
        order.order_id,
    )
    return _parse(row)


class PostgreSQLOrderRepository(OrderRepository):
    """
    PostgreSQL implementation of OrderRepository.
    """

    def __init__(self, pool: Pool):
        """
        Initialize with an asyncpg connection pool.

        Args:
            pool: asyncpg connection pool for database operations
        """
        self.pool = pool
        logger.debug("Initialized PostgreSQLOrderRepository")

    async def generate_order_id(self, now: datetime) -> str:
        day = now.strftime("%Y%m%d")
        async with self.pool.acquire() as conn:
            seq = await conn.fetchval(
                """
                INSERT INTO order_sequences (day, value) VALUES ($1, 1)
                ON CONFLICT (day)
                DO UPDATE SET value = order_sequences.value + 1
                RETURNING value
                """,
                day,
            )
        return f"ORD-{day}-{seq}"

    async def get(self, order_id: str) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT order_data FROM orders WHERE order_id = $1", order_id
            )
        return _parse(row)

    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT order_data FROM orders WHERE idempotency_key = $1",
                key,
            )
        return _parse(row)

    async def get_by_merchant_transaction_id(
        self, merchant_transaction_id: str
    ) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT order_data FROM orders
                WHERE merchant_transaction_id = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                merchant_transaction_id,
            )
        return _parse(row)

    async def find_by_caller_key(self, caller_key: str) -> List[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT order_data FROM orders WHERE caller_key = $1",
                caller_key,
            )
        return _parse_all(rows)

    async def find_stale_pending(
        self, cutoff: datetime, payment_methods: List[str]
    ) -> List[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT order_data FROM orders
                WHERE payment_status = 'Pending'
                  AND order_status IN ('Pending', 'Processing')
                  AND payment_method = ANY($2::text[])
                  AND created_at < $1
                ORDER BY created_at
                """,
                cutoff,
                payment_methods,
            )
        return _parse_all(rows)

    async def find_presumptive(self) -> List[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT order_data FROM orders
                WHERE presumptive_success AND payment_status = 'Paid'
                ORDER BY created_at
                """
            )
        return _parse_all(rows)

    async def find_by_contact(
        self, email: str, phone: str, order_id: Optional[str] = None
    ) -> List[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT order_data FROM orders
                WHERE customer_email = lower($1) AND customer_phone = $2
                  AND ($3::text IS NULL OR order_id = $3)
                ORDER BY created_at DESC
                """,
                email.strip(),
                phone,
                order_id,
            )
        return _parse_all(rows)

    async def list_pending(self) -> List[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT order_data FROM orders
                WHERE payment_status = 'Pending' AND order_status = 'Pending'
                ORDER BY created_at DESC
                """
            )
        return _parse_all(rows)

    async def _insert_new(self, order: Order, deduct: bool) -> Order:
        async with self.pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await _lock_caller_key(conn, order.caller_key)
                    if deduct:
                        await deduct_stock(conn, order.order_items)
                    await _insert(conn, order)
            except asyncpg.UniqueViolationError:
                existing = await self.get_by_idempotency_key(
                    order.idempotency_key
                )
                if existing is None:
                    raise
                raise DuplicateAttempt(
                    existing.order_id,
                    existing.order_status,
                    existing.payment_status,
                )
        return order

    async def insert_pending(self, order: Order) -> Order:
        order = order.model_copy(
            update={"payment_status": "Pending", "order_status": "Pending"}
        )
        stored = await self._insert_new(order, deduct=True)
        logger.info(
            "Inserted pending order",
            extra={
                "order_id": order.order_id,
                "payment_method": order.payment_method,
            },
        )
        return stored

    async def insert_canceled(self, order: Order) -> Order:
        order = order.model_copy(
            update={"payment_status": "Failed", "order_status": "Canceled"}
        )
        stored = await self._insert_new(order, deduct=False)
        logger.info(
            "Recorded canceled order",
            extra={"order_id": order.order_id},
        )
        return stored

    async def insert_paid(self, order: Order) -> FinalizeOutcome:
        order = order.model_copy(
            update={
                "payment_status": "Paid",
                "order_status": "Processing",
                "updated_at": utcnow(),
            }
        )
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await _lock_caller_key(conn, order.caller_key)

                existing = await _select_for_update(conn, order.order_id)
                if existing is not None:
                    result = (
                        "already_paid"
                        if existing.payment_status == "Paid"
                        else "not_pending"
                    )
                    return FinalizeOutcome(result=result, order=existing)

                sibling = await _paid_sibling(conn, order)
                if sibling is not None:
                    return FinalizeOutcome(
                        result="sibling_paid", order=sibling
                    )

                holder = _parse(
                    await conn.fetchrow(
                        "SELECT order_data FROM orders "
                        "WHERE idempotency_key = $1",
                        order.idempotency_key,
                    )
                )
                if holder is not None:
                    return FinalizeOutcome(result="not_pending", order=holder)

                await deduct_stock(conn, order.order_items)
                await _insert(conn, order)

        logger.info(
            "Inserted paid order",
            extra={"order_id": order.order_id},
        )
        return FinalizeOutcome(result="applied", order=order)

    async def mark_paid(
        self,
        order_id: str,
        transaction_id: Optional[str],
        gateway_response: Dict[str, Any],
        presumptive: bool = False,
    ) -> FinalizeOutcome:
        async with self.pool.acquire() as conn:
            caller_key = await conn.fetchval(
                "SELECT caller_key FROM orders WHERE order_id = $1", order_id
            )
            if caller_key is None:
                raise OrderNotFound(order_id)

            async with conn.transaction():
                # Advisory lock before the row lock, same order as
                # insert_paid
                await _lock_caller_key(conn, caller_key)
                existing = await _select_for_update(conn, order_id)
                if existing is None:
                    raise OrderNotFound(order_id)
                if existing.payment_status == "Paid":
                    return FinalizeOutcome(
                        result="already_paid", order=existing
                    )
                if existing.payment_status != "Pending":
                    return FinalizeOutcome(
                        result="not_pending", order=existing
                    )
                sibling = await _paid_sibling(conn, existing)
                if sibling is not None:
                    return FinalizeOutcome(
                        result="sibling_paid", order=sibling
                    )

                paid = existing.model_copy(
                    update={
                        "payment_status": "Paid",
                        "order_status": "Processing",
                        "transaction_id": transaction_id
                        or existing.transaction_id,
                        "gateway_response": gateway_response,
                        "presumptive_success": presumptive,
                        "updated_at": utcnow(),
                    }
                )
                if not await _update(conn, paid, expected="Pending"):
                    return FinalizeOutcome(
                        result="not_pending", order=existing
                    )

        logger.info(
            "Marked order paid",
            extra={"order_id": order_id, "presumptive": presumptive},
        )
        return FinalizeOutcome(result="applied", order=paid)

    async def cancel_pending(
        self, order_id: str, reason: str
    ) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await _select_for_update(conn, order_id)
                if existing is None or existing.payment_status != "Pending":
                    return None
                canceled = existing.model_copy(
                    update={
                        "payment_status": "Failed",
                        "order_status": "Canceled",
                        "cancellation_reason": reason,
                        "updated_at": utcnow(),
                    }
                )
                if not await _update(conn, canceled, expected="Pending"):
                    return None
                await restore_stock(conn, existing.order_items)

        logger.info(
            "Canceled pending order",
            extra={"order_id": order_id, "reason": reason},
        )
        return canceled

    async def apply_full_refund(
        self, order_id: str, refund: RefundDetails
    ) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await _select_for_update(conn, order_id)
                if existing is None or existing.payment_status != "Paid":
                    return None
                refunded = existing.model_copy(
                    update={
                        "payment_status": "Refunded",
                        "order_status": "Canceled",
                        "refund_details": refund,
                        "total_refunded": existing.final_total,
                        "updated_at": utcnow(),
                    }
                )
                if not await _update(conn, refunded, expected="Paid"):
                    return None
                await restore_stock(conn, existing.order_items)

        logger.info("Applied full refund", extra={"order_id": order_id})
        return refunded

    async def apply_partial_refund(
        self, order_id: str, refund: PartialRefund
    ) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await _select_for_update(conn, order_id)
                if existing is None or existing.payment_status != "Paid":
                    return None
                new_total = quantize_money(
                    existing.total_refunded + refund.amount
                )
                if new_total > existing.final_total:
                    return None
                update: Dict[str, Any] = {
                    "partial_refunds": existing.partial_refunds + [refund],
                    "total_refunded": new_total,
                    "updated_at": utcnow(),
                }
                if new_total == existing.final_total:
                    update["payment_status"] = "Refunded"
                    update["order_status"] = "Canceled"
                updated = existing.model_copy(update=update)
                if not await _update(conn, updated, expected="Paid"):
                    return None

        logger.info(
            "Applied partial refund",
            extra={
                "order_id": order_id,
                "total_refunded": str(updated.total_refunded),
            },
        )
        return updated

    async def update_refund_status(
        self, order_id: str, refund_id: str, status: str
    ) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await _select_for_update(conn, order_id)
                if existing is None:
                    return None
                updated = existing.with_refund_status(refund_id, status)
                if updated is None:
                    return None
                await _update(
                    conn, updated, expected=existing.payment_status
                )

        logger.info(
            "Updated refund status",
            extra={
                "order_id": order_id,
                "refund_id": refund_id,
                "refund_status": status,
            },
        )
        return updated

    async def clear_presumptive(self, order_id: str) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await _select_for_update(conn, order_id)
                if existing is None:
                    return
                cleared = existing.model_copy(
                    update={
                        "presumptive_success": False,
                        "updated_at": utcnow(),
                    }
                )
                await _update(
                    conn, cleared, expected=existing.payment_status
                )
