"""
PostgreSQL implementation of StockLedger.

The module-level ``deduct_stock`` and ``restore_stock`` helpers run on a
connection the caller already holds inside a transaction, so the order
repository moves stock in the same transaction as the order write.
"""

import logging
from typing import Dict, List

from asyncpg import Connection, Pool

from checkout.domain import CartItem, OrderItem, Product
from checkout.errors import InsufficientStock, ProductNotFound
from checkout.repositories import StockLedger

logger = logging.getLogger(__name__)


def _row_to_product(row) -> Product:
    return Product(
        product_id=row["product_id"],
        name=row["name"],
        price=row["price"],
        stock=row["stock"],
        seller_id=row["seller_id"],
    )


async def deduct_stock(conn: Connection, items: List[OrderItem]) -> None:
    """Decrement stock for every item or raise InsufficientStock.

    Rows are touched in product id order so concurrent deductions lock in
    the same order. Must run inside a transaction; raising rolls back the
    items already deducted.
    """
    for item in sorted(items, key=lambda i: i.product_id):
        remaining = await conn.fetchval(
            """
            UPDATE products
            SET stock = stock - $2
            WHERE product_id = $1 AND stock >= $2
            RETURNING stock
            """,
            item.product_id,
            item.quantity,
        )
        if remaining is None:
            available = await conn.fetchval(
                "SELECT stock FROM products WHERE product_id = $1",
                item.product_id,
            )
            raise InsufficientStock(
                item.product_id, item.quantity, available or 0
            )


async def restore_stock(conn: Connection, items: List[OrderItem]) -> None:
    for item in sorted(items, key=lambda i: i.product_id):
        result = await conn.execute(
            "UPDATE products SET stock = stock + $2 WHERE product_id = $1",
            item.product_id,
            item.quantity,
        )
        if result == "UPDATE 0":
            logger.warning(
                "Cannot restore stock for unknown product",
                extra={"product_id": item.product_id},
            )


class PostgreSQLStockLedger(StockLedger):
    """StockLedger over the ``products`` table."""

    def __init__(self, pool: Pool):
        self.pool = pool
        logger.debug("Initialized PostgreSQLStockLedger")

    async def get_products(self, product_ids: List[str]) -> Dict[str, Product]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT product_id, name, price, stock, seller_id
                FROM products
                WHERE product_id = ANY($1::text[])
                """,
                product_ids,
            )
        return {row["product_id"]: _row_to_product(row) for row in rows}

    async def check_available(self, items: List[CartItem]) -> List[Product]:
        products = await self.get_products([i.product_id for i in items])
        result = []
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                raise ProductNotFound(item.product_id)
            if product.stock < item.quantity:
                raise InsufficientStock(
                    item.product_id, item.quantity, product.stock
                )
            result.append(product)
        return result

    async def reserve_or_deduct(self, items: List[OrderItem]) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await deduct_stock(conn, items)
        logger.debug("Stock deducted", extra={"item_count": len(items)})

    async def restore(self, items: List[OrderItem]) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await restore_stock(conn, items)
        logger.debug("Stock restored", extra={"item_count": len(items)})
