"""
Orderflow — cart store

Cart rows belong to the storefront; checkout only reads them and removes
them in bulk. Both operations take the caller's session so they join the
checkout transaction.
"""

from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import CartItem
from .schema import cart_items


class CartStore(Protocol):
    async def list_items(self, session: AsyncSession, user_id: str) -> list[CartItem]: ...

    async def clear(self, session: AsyncSession, user_id: str) -> int: ...


class SqlCartStore:
    async def list_items(self, session: AsyncSession, user_id: str) -> list[CartItem]:
        result = await session.execute(
            select(cart_items.c.user_id, cart_items.c.product_id, cart_items.c.quantity)
            .where(cart_items.c.user_id == user_id)
            .order_by(cart_items.c.created_at, cart_items.c.product_id)
        )
        return [CartItem.model_validate(dict(row)) for row in result.mappings().all()]

    async def clear(self, session: AsyncSession, user_id: str) -> int:
        result = await session.execute(
            delete(cart_items).where(cart_items.c.user_id == user_id)
        )
        return result.rowcount
