"""
Shared in-memory state for the memory repositories.

The order repository and the stock ledger must see one consistent view and
mutate it atomically together, so both wrap the same ``MemoryStore``. A
single ``asyncio.Lock`` plays the role a database transaction plays in the
PostgreSQL backend: everything done while holding it is all-or-nothing and
invisible to other coroutines until released.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from checkout.domain import Order, OrderItem, Product
from checkout.errors import InsufficientStock

logger = logging.getLogger(__name__)


class MemoryStore:
    """Dictionaries for products, orders and counters plus one lock."""

    def __init__(self, products: Optional[List[Product]] = None) -> None:
        self.lock = asyncio.Lock()
        self.products: Dict[str, Product] = {}
        self.orders: Dict[str, Order] = {}
        self.sequences: Dict[str, int] = {}
        for product in products or []:
            self.products[product.product_id] = product.model_copy()
        logger.debug(
            "Initialized MemoryStore",
            extra={"product_count": len(self.products)},
        )

    def add_product(self, product: Product) -> None:
        self.products[product.product_id] = product.model_copy()

    def stock_of(self, product_id: str) -> int:
        return self.products[product_id].stock

    # The helpers below assume the caller holds ``self.lock``.

    def deduct_locked(self, items: List[OrderItem]) -> None:
        for item in items:
            product = self.products.get(item.product_id)
            available = product.stock if product else 0
            if available < item.quantity:
                raise InsufficientStock(
                    item.product_id, item.quantity, available
                )
        for item in items:
            product = self.products[item.product_id]
            self.products[item.product_id] = product.model_copy(
                update={"stock": product.stock - item.quantity}
            )

    def restore_locked(self, items: List[OrderItem]) -> None:
        for item in items:
            product = self.products.get(item.product_id)
            if product is None:
                logger.warning(
                    "MemoryStore: cannot restore stock for unknown product",
                    extra={"product_id": item.product_id},
                )
                continue
            self.products[item.product_id] = product.model_copy(
                update={"stock": product.stock + item.quantity}
            )

    def find_by_key_locked(self, key: str) -> Optional[Order]:
        for order in self.orders.values():
            if order.idempotency_key == key:
                return order
        return None

    def paid_sibling_locked(self, order: Order) -> Optional[Order]:
        for other in self.orders.values():
            if (
                other.order_id != order.order_id
                and other.caller_key == order.caller_key
                and other.payment_status == "Paid"
            ):
                return other
        return None
