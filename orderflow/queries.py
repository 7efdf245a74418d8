"""
Orderflow — order queries (read side)

Plain lookups that return pydantic models. They work inside or outside an
open transaction; checkout and the webhook processor call them with their
own session so the reads see the transaction's writes.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order, OrderItem, OrderStatusChange
from .schema import order_items, order_status_changes, orders


async def _load_items(session: AsyncSession, order_id: str) -> list[OrderItem]:
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.product_id)
    )
    return [OrderItem.model_validate(dict(row)) for row in result.mappings().all()]


async def _one(session: AsyncSession, query) -> Order | None:
    result = await session.execute(query)
    row = result.mappings().first()
    if not row:
        return None
    items = await _load_items(session, row["id"])
    return Order.model_validate({**row, "items": items})


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    return await _one(session, select(orders).where(orders.c.id == order_id))


async def get_order_by_number(session: AsyncSession, order_number: str) -> Order | None:
    return await _one(session, select(orders).where(orders.c.order_number == order_number))


async def find_by_payment_reference(session: AsyncSession, payment_reference: str) -> Order | None:
    """The order a payment intent belongs to, or None if checkout never committed."""
    return await _one(
        session,
        select(orders)
        .where(orders.c.payment_reference == payment_reference)
        .order_by(orders.c.created_at.desc()),
    )


async def list_orders_for_user(session: AsyncSession, user_id: str) -> list[Order]:
    result = await session.execute(
        select(orders).where(orders.c.user_id == user_id).order_by(orders.c.created_at.desc())
    )
    return [
        Order.model_validate({**row, "items": await _load_items(session, row["id"])})
        for row in result.mappings().all()
    ]


async def get_status_history(session: AsyncSession, order_id: str) -> list[OrderStatusChange]:
    result = await session.execute(
        select(order_status_changes)
        .where(order_status_changes.c.order_id == order_id)
        .order_by(order_status_changes.c.created_at)
    )
    return [OrderStatusChange.model_validate(dict(row)) for row in result.mappings().all()]
