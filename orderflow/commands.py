"""
Orderflow — order commands (write side)

Every status change, whether an admin clicked a button or the payment
provider sent a webhook, goes through transition_order():

    1. read the current status inside the caller's transaction (or take
       the status the caller already read)
    2. ask the state machine whether the move is legal
    3. compare-and-set: UPDATE ... WHERE status = <what we read>
    4. append an order_status_changes history row

Step 3 makes the check race-free: if another writer changed the order in
between, zero rows match and nothing is written.
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import queries, status_machine
from .db import is_retryable_db_error
from .errors import (
    ConcurrentModificationError,
    ConfirmationRequiredError,
    OrderNotFoundError,
)
from .models import Order, OrderStatus
from .notifications import Notifier, dispatch
from .schema import order_status_changes, orders

logger = logging.getLogger(__name__)


async def transition_order(
    session: AsyncSession,
    order_id: str,
    new_status: OrderStatus,
    *,
    changed_by: str | None,
    notes: str | None = None,
    confirmed: bool = False,
    expected: OrderStatus | None = None,
) -> tuple[Order, OrderStatus]:
    """
    Move an order to new_status. Returns (updated order, previous status).

    Callers that already loaded the order pass its status as `expected`;
    it is then the compare-and-set condition instead of a fresh read.

    Raises InvalidStateTransitionError for illegal moves,
    ConfirmationRequiredError for risky moves made without confirmed=True,
    and ConcurrentModificationError when the status changed underneath us.
    """
    new_status = OrderStatus(new_status)
    if expected is None:
        result = await session.execute(select(orders.c.status).where(orders.c.id == order_id))
        current = result.scalar_one_or_none()
        if current is None:
            raise OrderNotFoundError(order_id)
        previous = OrderStatus(current)
    else:
        previous = OrderStatus(expected)

    status_machine.ensure_transition(previous, new_status)
    if status_machine.requires_confirmation(previous, new_status):
        warning = status_machine.transition_warning(previous, new_status) or ""
        if not confirmed:
            raise ConfirmationRequiredError(previous.value, new_status.value, warning)
        logger.warning(
            "Risky transition %s -> %s on order %s by %s: %s",
            previous.value, new_status.value, order_id, changed_by, warning,
        )

    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.status == previous.value)
        .values(status=new_status.value, updated_at=now)
    )
    if result.rowcount != 1:
        raise ConcurrentModificationError(
            f"Order {order_id} changed while moving it from {previous.value} to {new_status.value}"
        )

    await session.execute(
        insert(order_status_changes).values(
            id=str(uuid4()),
            order_id=order_id,
            previous_status=previous.value,
            new_status=new_status.value,
            changed_by=changed_by,
            notes=notes,
            created_at=now,
        )
    )

    order = await queries.get_order(session, order_id)
    return order, previous


async def update_status(
    session_factory: sessionmaker,
    order_id: str,
    new_status: OrderStatus,
    admin_user_id: str,
    notes: str | None = None,
    confirmed: bool = False,
    notifier: Notifier | None = None,
) -> Order:
    """Admin status change: one transaction, then a best-effort customer email."""
    try:
        async with session_factory() as session:
            async with session.begin():
                order, previous = await transition_order(
                    session,
                    order_id,
                    new_status,
                    changed_by=admin_user_id,
                    notes=notes,
                    confirmed=confirmed,
                )
    except DBAPIError as e:
        if not is_retryable_db_error(e):
            raise
        raise ConcurrentModificationError(f"Order {order_id} could not be updated: {e.orig}") from e

    logger.info(
        "Order %s status %s -> %s by admin %s",
        order.order_number, previous.value, order.status.value, admin_user_id,
    )
    if notifier is not None:
        dispatch(
            notifier.send_status_change(order, previous),
            f"status change for {order.order_number}",
        )
    return order
