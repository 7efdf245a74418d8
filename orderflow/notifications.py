"""
Orderflow — customer notifications

Confirmation and status-change messages are published to the
`order_events` Redis channel, where the mail worker picks them up.
Pub/Sub is fire-and-forget: a message published while no worker is
subscribed is lost, which is acceptable for courtesy emails.

Sends are always scheduled after commit with dispatch(); a failing or slow
notifier never fails or delays checkout or webhook acknowledgement.
"""

import asyncio
import json
import logging
from collections.abc import Coroutine
from typing import Any, Protocol

import redis.asyncio as aioredis

from .models import Order, OrderStatus

logger = logging.getLogger(__name__)

CHANNEL = "order_events"

_pending: set[asyncio.Task] = set()


class Notifier(Protocol):
    async def send_order_confirmation(self, order: Order) -> None: ...

    async def send_status_change(self, order: Order, previous_status: OrderStatus) -> None: ...


class LoggingNotifier:
    """Used when no Redis is configured."""

    async def send_order_confirmation(self, order: Order) -> None:
        logger.info("Order confirmation for %s (user %s)", order.order_number, order.user_id)

    async def send_status_change(self, order: Order, previous_status: OrderStatus) -> None:
        logger.info(
            "Order %s status %s -> %s",
            order.order_number, previous_status.value, order.status.value,
        )


class RedisNotifier:
    def __init__(self, redis: aioredis.Redis, channel: str = CHANNEL):
        self.redis = redis
        self.channel = channel

    async def send_order_confirmation(self, order: Order) -> None:
        await self._publish("OrderConfirmationRequested", {"order": order.model_dump(mode="json")})

    async def send_status_change(self, order: Order, previous_status: OrderStatus) -> None:
        await self._publish(
            "OrderStatusChanged",
            {
                "order": order.model_dump(mode="json"),
                "previous_status": previous_status.value,
                "new_status": order.status.value,
            },
        )

    async def _publish(self, event_type: str, data: dict) -> None:
        await self.redis.publish(
            self.channel,
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )


async def _guarded(send: Coroutine[Any, Any, None], description: str) -> None:
    try:
        await send
    except Exception:
        logger.exception("Notification failed: %s", description)


def dispatch(send: Coroutine[Any, Any, None], description: str) -> asyncio.Task:
    """Run a notification in the background; failures are logged only."""
    task = asyncio.create_task(_guarded(send, description))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain() -> None:
    """Wait for in-flight notifications (shutdown, tests)."""
    loop = asyncio.get_running_loop()
    tasks = [t for t in _pending if t.get_loop() is loop]
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
