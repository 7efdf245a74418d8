"""
Orderflow — inventory guard

Stock is decremented with one conditional UPDATE per product:

    UPDATE products SET inventory = inventory - :qty
    WHERE id = :id AND inventory >= :qty

The check and the write are a single statement, so two concurrent
checkouts cannot both see the last unit. Zero affected rows means a
shortfall; the guard raises and the surrounding checkout transaction
rolls back every decrement it already made.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InsufficientInventoryError, ValidationError
from .schema import products

logger = logging.getLogger(__name__)


def _merge(items: list[tuple[str, int]]) -> list[tuple[str, int]]:
    """Sum duplicate product ids and sort, so locks are taken in a fixed order."""
    merged: dict[str, int] = {}
    for product_id, qty in items:
        if qty <= 0:
            raise ValidationError(f"Quantity for product {product_id} must be positive")
        merged[product_id] = merged.get(product_id, 0) + qty
    return sorted(merged.items())


async def reserve(session: AsyncSession, items: list[tuple[str, int]]) -> None:
    """
    Decrement inventory for every (product_id, quantity) pair or raise.

    Must be called inside an open transaction. Sorting by product id keeps
    the row-lock order identical across concurrent checkouts, which avoids
    lock-order deadlocks on PostgreSQL.
    """
    now = datetime.now(timezone.utc)
    for product_id, qty in _merge(items):
        result = await session.execute(
            update(products)
            .where(products.c.id == product_id, products.c.inventory >= qty)
            .values(inventory=products.c.inventory - qty, updated_at=now)
        )
        if result.rowcount == 1:
            continue

        current = await session.execute(
            select(products.c.inventory).where(products.c.id == product_id)
        )
        available = current.scalar_one_or_none() or 0
        logger.info(
            "Inventory shortfall for product %s: requested=%d available=%d",
            product_id, qty, available,
        )
        raise InsufficientInventoryError(product_id, qty, available)
