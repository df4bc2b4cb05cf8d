"""
Memory implementation of StockLedger.
"""

import logging
from typing import Dict, List

from checkout.domain import CartItem, OrderItem, Product
from checkout.errors import InsufficientStock, ProductNotFound
from checkout.repositories import StockLedger
from .store import MemoryStore

logger = logging.getLogger(__name__)


class MemoryStockLedger(StockLedger):
    """StockLedger over a shared MemoryStore."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.logger = logger
        logger.debug("Initializing MemoryStockLedger")

    async def get_products(self, product_ids: List[str]) -> Dict[str, Product]:
        return {
            pid: self.store.products[pid].model_copy()
            for pid in product_ids
            if pid in self.store.products
        }

    async def check_available(self, items: List[CartItem]) -> List[Product]:
        products = []
        for item in items:
            product = self.store.products.get(item.product_id)
            if product is None:
                raise ProductNotFound(item.product_id)
            if product.stock < item.quantity:
                raise InsufficientStock(
                    item.product_id, item.quantity, product.stock
                )
            products.append(product.model_copy())
        return products

    async def reserve_or_deduct(self, items: List[OrderItem]) -> None:
        async with self.store.lock:
            self.store.deduct_locked(items)
        self.logger.debug(
            "MemoryStockLedger: stock deducted",
            extra={"item_count": len(items)},
        )

    async def restore(self, items: List[OrderItem]) -> None:
        async with self.store.lock:
            self.store.restore_locked(items)
        self.logger.debug(
            "MemoryStockLedger: stock restored",
            extra={"item_count": len(items)},
        )
