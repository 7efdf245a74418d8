"""
Shared pytest fixtures for the orderflow tests.

Every test gets its own file-backed SQLite database (aiosqlite) in a
temporary directory, so concurrent sessions really use separate
connections and the database write lock.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import insert, select, update

from orderflow import commands, db, notifications
from orderflow.checkout import CheckoutOrchestrator
from orderflow.config import Settings
from orderflow.models import Order, OrderStatus
from orderflow.payments import StripePaymentProvider
from orderflow.schema import cart_items, products
from orderflow.webhooks import PaymentEventProcessor

WEBHOOK_SECRET = "whsec_test_secret"

SHIPPING_ADDRESS = {
    "name": "Ada Lovelace",
    "address1": "12 Analytical Way",
    "city": "London",
    "state": "LDN",
    "postal_code": "NW1 6XE",
    "country": "GB",
}


# ============================================================================
# Collaborator doubles
# ============================================================================


class RecordingNotifier:
    def __init__(self) -> None:
        self.confirmations: list[Order] = []
        self.status_changes: list[tuple[Order, OrderStatus]] = []

    async def send_order_confirmation(self, order: Order) -> None:
        self.confirmations.append(order)

    async def send_status_change(self, order: Order, previous_status: OrderStatus) -> None:
        self.status_changes.append((order, previous_status))


class FailingNotifier:
    async def send_order_confirmation(self, order: Order) -> None:
        raise ConnectionError("mail relay down")

    async def send_status_change(self, order: Order, previous_status: OrderStatus) -> None:
        raise ConnectionError("mail relay down")


# ============================================================================
# Stripe-format payloads
# ============================================================================


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header: t=<ts>,v1=<hex hmac of '<ts>.<payload>'>."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{ts}.".encode("utf-8") + payload,
        hashlib.sha256,
    ).hexdigest()
    return f"t={ts},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str | None = None) -> bytes:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }
    ).encode("utf-8")


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(stripe_webhook_secret=WEBHOOK_SECRET)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = db.create_engine(f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}")
    await db.create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return db.create_session_factory(engine)


@pytest.fixture
def seed_product(session_factory):
    async def _seed(
        product_id: str,
        price: int = 1000,
        inventory: int = 10,
        status: str = "ACTIVE",
        name: str | None = None,
    ) -> str:
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert(products).values(
                        id=product_id,
                        name=name or product_id.title(),
                        price=price,
                        inventory=inventory,
                        status=status,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
        return product_id

    return _seed


@pytest.fixture
def add_to_cart(session_factory):
    async def _add(user_id: str, product_id: str, quantity: int = 1) -> None:
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert(cart_items).values(
                        id=str(uuid4()),
                        user_id=user_id,
                        product_id=product_id,
                        quantity=quantity,
                        created_at=datetime.now(timezone.utc),
                    )
                )

    return _add


@pytest.fixture
def product_inventory(session_factory):
    async def _inventory(product_id: str) -> int:
        async with session_factory() as session:
            result = await session.execute(
                select(products.c.inventory).where(products.c.id == product_id)
            )
            return result.scalar_one()

    return _inventory


@pytest.fixture
def set_price(session_factory):
    async def _set(product_id: str, price: int) -> None:
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(products).where(products.c.id == product_id).values(price=price)
                )

    return _set


# ============================================================================
# Components
# ============================================================================


@pytest_asyncio.fixture
async def notifier():
    notifier = RecordingNotifier()
    yield notifier
    await notifications.drain()


@pytest.fixture
def checkout(session_factory, settings, notifier) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(session_factory, settings, notifier=notifier)


@pytest.fixture
def processor(session_factory, notifier) -> PaymentEventProcessor:
    return PaymentEventProcessor(
        session_factory,
        StripePaymentProvider(),
        WEBHOOK_SECRET,
        timeout_seconds=5.0,
        notifier=notifier,
    )


@pytest.fixture
def place_order(checkout, seed_product, add_to_cart):
    """Seed a product, put it in a cart and check out. Returns the Order."""

    async def _place(
        user_id: str = "user-1",
        payment_reference: str = "pi_123",
        product_id: str | None = None,
        price: int = 2500,
        quantity: int = 1,
    ) -> Order:
        product_id = product_id or f"prod-{uuid4().hex[:8]}"
        await seed_product(product_id, price=price, inventory=10)
        await add_to_cart(user_id, product_id, quantity)
        return await checkout.execute(user_id, SHIPPING_ADDRESS, payment_reference)

    return _place


@pytest.fixture
def advance(session_factory):
    """Walk an order through admin transitions, e.g. advance(order.id, SHIPPED, DELIVERED)."""

    async def _advance(order_id: str, *statuses: OrderStatus) -> Order:
        order = None
        for status in statuses:
            order = await commands.update_status(
                session_factory, order_id, status, "admin-1", confirmed=True
            )
        return order

    return _advance
