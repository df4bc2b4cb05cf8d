"""
Memory implementation of OrderRepository.

Stores orders in a dictionary keyed by order identifier. Every mutating
method runs under the store lock and checks the order's current status
before changing it, mirroring the conditional ``UPDATE ... WHERE`` used by
the PostgreSQL backend, so concurrency tests written against this backend
exercise the same contract.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

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
from .store import MemoryStore

logger = logging.getLogger(__name__)


class MemoryOrderRepository(OrderRepository):
    """OrderRepository over a shared MemoryStore."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.logger = logger
        self.entity_name = "Order"
        logger.debug("Initializing MemoryOrderRepository")

    def _copy(self, order: Optional[Order]) -> Optional[Order]:
        return order.model_copy(deep=True) if order else None

    def _save_locked(self, order: Order) -> Order:
        self.store.orders[order.order_id] = order
        return order.model_copy(deep=True)

    async def generate_order_id(self, now: datetime) -> str:
        day = now.strftime("%Y%m%d")
        async with self.store.lock:
            seq = self.store.sequences.get(day, 0) + 1
            self.store.sequences[day] = seq
        return f"ORD-{day}-{seq}"

    async def get(self, order_id: str) -> Optional[Order]:
        return self._copy(self.store.orders.get(order_id))

    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        return self._copy(self.store.find_by_key_locked(key))

    async def get_by_merchant_transaction_id(
        self, merchant_transaction_id: str
    ) -> Optional[Order]:
        for order in self.store.orders.values():
            if order.merchant_transaction_id == merchant_transaction_id:
                return self._copy(order)
        return None

    async def find_by_caller_key(self, caller_key: str) -> List[Order]:
        return [
            order.model_copy(deep=True)
            for order in self.store.orders.values()
            if order.caller_key == caller_key
        ]

    async def find_stale_pending(
        self, cutoff: datetime, payment_methods: List[str]
    ) -> List[Order]:
        return [
            order.model_copy(deep=True)
            for order in self.store.orders.values()
            if order.payment_status == "Pending"
            and order.order_status in ("Pending", "Processing")
            and order.payment_method in payment_methods
            and order.created_at < cutoff
        ]

    async def find_presumptive(self) -> List[Order]:
        return [
            order.model_copy(deep=True)
            for order in self.store.orders.values()
            if order.presumptive_success and order.payment_status == "Paid"
        ]

    async def find_by_contact(
        self, email: str, phone: str, order_id: Optional[str] = None
    ) -> List[Order]:
        email = email.strip().lower()
        matches = []
        for order in self.store.orders.values():
            customer = order.customer
            if (customer.email or "").lower() != email:
                continue
            if customer.phone != phone:
                continue
            if order_id and order.order_id != order_id:
                continue
            matches.append(order.model_copy(deep=True))
        return matches

    async def list_pending(self) -> List[Order]:
        pending = [
            order.model_copy(deep=True)
            for order in self.store.orders.values()
            if order.payment_status == "Pending"
            and order.order_status == "Pending"
        ]
        return sorted(pending, key=lambda o: o.created_at, reverse=True)

    async def insert_pending(self, order: Order) -> Order:
        async with self.store.lock:
            existing = self.store.find_by_key_locked(order.idempotency_key)
            if existing is not None:
                raise DuplicateAttempt(
                    existing.order_id,
                    existing.order_status,
                    existing.payment_status,
                )
            self.store.deduct_locked(order.order_items)
            stored = self._save_locked(
                order.model_copy(
                    update={
                        "payment_status": "Pending",
                        "order_status": "Pending",
                    },
                    deep=True,
                )
            )
        self.logger.info(
            "MemoryOrderRepository: pending order inserted",
            extra={
                "order_id": order.order_id,
                "payment_method": order.payment_method,
            },
        )
        return stored

    async def insert_canceled(self, order: Order) -> Order:
        async with self.store.lock:
            existing = self.store.find_by_key_locked(order.idempotency_key)
            if existing is not None:
                raise DuplicateAttempt(
                    existing.order_id,
                    existing.order_status,
                    existing.payment_status,
                )
            stored = self._save_locked(
                order.model_copy(
                    update={
                        "payment_status": "Failed",
                        "order_status": "Canceled",
                    },
                    deep=True,
                )
            )
        self.logger.info(
            "MemoryOrderRepository: canceled order recorded",
            extra={"order_id": order.order_id},
        )
        return stored

    async def insert_paid(self, order: Order) -> FinalizeOutcome:
        async with self.store.lock:
            existing = self.store.orders.get(order.order_id)
            if existing is not None:
                result = (
                    "already_paid"
                    if existing.payment_status == "Paid"
                    else "not_pending"
                )
                return FinalizeOutcome(
                    result=result, order=self._copy(existing)
                )
            sibling = self.store.paid_sibling_locked(order)
            if sibling is not None:
                return FinalizeOutcome(
                    result="sibling_paid", order=self._copy(sibling)
                )
            holder = self.store.find_by_key_locked(order.idempotency_key)
            if holder is not None:
                return FinalizeOutcome(
                    result="not_pending", order=self._copy(holder)
                )
            self.store.deduct_locked(order.order_items)
            stored = self._save_locked(
                order.model_copy(
                    update={
                        "payment_status": "Paid",
                        "order_status": "Processing",
                        "updated_at": utcnow(),
                    },
                    deep=True,
                )
            )
        self.logger.info(
            "MemoryOrderRepository: paid order inserted",
            extra={"order_id": order.order_id},
        )
        return FinalizeOutcome(result="applied", order=stored)

    async def mark_paid(
        self,
        order_id: str,
        transaction_id: Optional[str],
        gateway_response: Dict[str, Any],
        presumptive: bool = False,
    ) -> FinalizeOutcome:
        async with self.store.lock:
            existing = self.store.orders.get(order_id)
            if existing is None:
                raise OrderNotFound(order_id)
            if existing.payment_status == "Paid":
                return FinalizeOutcome(
                    result="already_paid", order=self._copy(existing)
                )
            if existing.payment_status != "Pending":
                return FinalizeOutcome(
                    result="not_pending", order=self._copy(existing)
                )
            sibling = self.store.paid_sibling_locked(existing)
            if sibling is not None:
                return FinalizeOutcome(
                    result="sibling_paid", order=self._copy(sibling)
                )
            stored = self._save_locked(
                existing.model_copy(
                    update={
                        "payment_status": "Paid",
                        "order_status": "Processing",
                        "transaction_id": transaction_id
                        or existing.transaction_id,
                        "gateway_response": gateway_response,
                        "presumptive_success": presumptive,
                        "updated_at": utcnow(),
                    },
                    deep=True,
                )
            )
        self.logger.info(
            "MemoryOrderRepository: order marked paid",
            extra={"order_id": order_id, "presumptive": presumptive},
        )
        return FinalizeOutcome(result="applied", order=stored)

    async def cancel_pending(
        self, order_id: str, reason: str
    ) -> Optional[Order]:
        async with self.store.lock:
            existing = self.store.orders.get(order_id)
            if existing is None or existing.payment_status != "Pending":
                return None
            self.store.restore_locked(existing.order_items)
            stored = self._save_locked(
                existing.model_copy(
                    update={
                        "payment_status": "Failed",
                        "order_status": "Canceled",
                        "cancellation_reason": reason,
                        "updated_at": utcnow(),
                    },
                    deep=True,
                )
            )
        self.logger.info(
            "MemoryOrderRepository: pending order canceled",
            extra={"order_id": order_id, "reason": reason},
        )
        return stored

    async def apply_full_refund(
        self, order_id: str, refund: RefundDetails
    ) -> Optional[Order]:
        async with self.store.lock:
            existing = self.store.orders.get(order_id)
            if existing is None or existing.payment_status != "Paid":
                return None
            self.store.restore_locked(existing.order_items)
            stored = self._save_locked(
                existing.model_copy(
                    update={
                        "payment_status": "Refunded",
                        "order_status": "Canceled",
                        "refund_details": refund,
                        "total_refunded": existing.final_total,
                        "updated_at": utcnow(),
                    },
                    deep=True,
                )
            )
        return stored

    async def apply_partial_refund(
        self, order_id: str, refund: PartialRefund
    ) -> Optional[Order]:
        async with self.store.lock:
            existing = self.store.orders.get(order_id)
            if existing is None or existing.payment_status != "Paid":
                return None
            new_total = quantize_money(existing.total_refunded + refund.amount)
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
            stored = self._save_locked(
                existing.model_copy(update=update, deep=True)
            )
        return stored

    async def update_refund_status(
        self, order_id: str, refund_id: str, status: str
    ) -> Optional[Order]:
        async with self.store.lock:
            existing = self.store.orders.get(order_id)
            if existing is None:
                return None
            updated = existing.with_refund_status(refund_id, status)
            if updated is None:
                return None
            return self._save_locked(updated)

    async def clear_presumptive(self, order_id: str) -> None:
        async with self.store.lock:
            existing = self.store.orders.get(order_id)
            if existing is not None:
                self._save_locked(
                    existing.model_copy(
                        update={
                            "presumptive_success": False,
                            "updated_at": utcnow(),
                        }
                    )
                )
