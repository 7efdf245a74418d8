"""
Orderflow — catalog lookup

Returns the product as it is right now, inside the caller's transaction.
Checkout prices from this snapshot, never from anything the client sent.
"""

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ProductSnapshot
from .schema import products


class Catalog(Protocol):
    async def get_purchasable_snapshot(
        self, session: AsyncSession, product_id: str
    ) -> ProductSnapshot | None: ...


class SqlCatalog:
    async def get_purchasable_snapshot(
        self, session: AsyncSession, product_id: str
    ) -> ProductSnapshot | None:
        result = await session.execute(
            select(
                products.c.id,
                products.c.name,
                products.c.price,
                products.c.inventory,
                products.c.status,
            ).where(products.c.id == product_id)
        )
        row = result.mappings().first()
        if row is None:
            return None
        return ProductSnapshot.model_validate(dict(row))
