"""
Checkout orchestrator tests.

Covers the happy path, every typed failure with full rollback, price
snapshotting, notifications and the last-unit race.
"""

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from orderflow import notifications, pricing, queries
from orderflow.cart import SqlCartStore
from orderflow.checkout import CheckoutOrchestrator
from orderflow.errors import (
    CheckoutConflictError,
    EmptyCartError,
    InsufficientInventoryError,
    ProductUnavailableError,
    ValidationError,
)
from orderflow.models import OrderStatus
from orderflow.schema import order_items, orders
from tests.conftest import SHIPPING_ADDRESS, FailingNotifier


async def count(session_factory, table) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(table))
        return result.scalar_one()


async def cart_of(session_factory, user_id: str):
    async with session_factory() as session:
        return await SqlCartStore().list_items(session, user_id)


class TestCheckoutHappyPath:
    async def test_creates_order_from_cart(
        self, checkout, seed_product, add_to_cart, session_factory, product_inventory
    ):
        await seed_product("mug", price=2500, inventory=5)
        await seed_product("tee", price=1000, inventory=3)
        await add_to_cart("user-1", "mug", 2)
        await add_to_cart("user-1", "tee", 1)

        order = await checkout.execute("user-1", SHIPPING_ADDRESS, "pi_abc")

        assert order.status == OrderStatus.PENDING
        assert order.user_id == "user-1"
        assert order.payment_reference == "pi_abc"
        assert order.order_number.startswith("ORD-")
        assert order.subtotal == 6000
        assert order.tax == 480
        assert order.shipping == 999
        assert order.total == order.subtotal + order.tax + order.shipping
        assert {(i.product_id, i.quantity, i.price) for i in order.items} == {
            ("mug", 2, 2500),
            ("tee", 1, 1000),
        }
        assert order.shipping_address.city == "London"

        assert await cart_of(session_factory, "user-1") == []
        assert await product_inventory("mug") == 3
        assert await product_inventory("tee") == 2

    async def test_order_is_persisted(self, place_order, session_factory):
        order = await place_order()
        async with session_factory() as session:
            stored = await queries.get_order(session, order.id)
            by_number = await queries.get_order_by_number(session, order.order_number)
        assert stored == order
        assert by_number.id == order.id

    async def test_other_users_cart_untouched(self, checkout, seed_product, add_to_cart, session_factory):
        await seed_product("mug", inventory=5)
        await add_to_cart("user-1", "mug", 1)
        await add_to_cart("user-2", "mug", 1)

        await checkout.execute("user-1", SHIPPING_ADDRESS, "pi_1")

        assert len(await cart_of(session_factory, "user-2")) == 1

    async def test_sends_confirmation_after_commit(self, place_order, notifier):
        order = await place_order()
        await notifications.drain()
        assert [o.id for o in notifier.confirmations] == [order.id]

    async def test_notification_failure_does_not_fail_checkout(
        self, session_factory, settings, seed_product, add_to_cart
    ):
        checkout = CheckoutOrchestrator(session_factory, settings, notifier=FailingNotifier())
        await seed_product("mug")
        await add_to_cart("user-1", "mug", 1)

        order = await checkout.execute("user-1", SHIPPING_ADDRESS, "pi_1")
        await notifications.drain()

        assert order.status == OrderStatus.PENDING


class TestCheckoutFailures:
    async def test_empty_cart(self, checkout):
        with pytest.raises(EmptyCartError):
            await checkout.execute("nobody", SHIPPING_ADDRESS, "pi_1")

    async def test_inactive_product_rolls_back(
        self, checkout, seed_product, add_to_cart, session_factory, product_inventory
    ):
        await seed_product("mug", inventory=5)
        await seed_product("retired", inventory=5, status="INACTIVE")
        await add_to_cart("user-1", "mug", 1)
        await add_to_cart("user-1", "retired", 1)

        with pytest.raises(ProductUnavailableError) as exc_info:
            await checkout.execute("user-1", SHIPPING_ADDRESS, "pi_1")

        assert exc_info.value.product_id == "retired"
        assert await count(session_factory, orders) == 0
        assert await product_inventory("mug") == 5
        assert len(await cart_of(session_factory, "user-1")) == 2

    async def test_insufficient_inventory_reports_stock(
        self, checkout, seed_product, add_to_cart, session_factory, product_inventory
    ):
        await seed_product("mug", inventory=5)
        await seed_product("rare", inventory=2)
        await add_to_cart("user-1", "mug", 1)
        await add_to_cart("user-1", "rare", 3)

        with pytest.raises(InsufficientInventoryError) as exc_info:
            await checkout.execute("user-1", SHIPPING_ADDRESS, "pi_1")

        err = exc_info.value
        assert (err.product_id, err.requested, err.available) == ("rare", 3, 2)
        assert "available=2" in err.message
        assert await count(session_factory, orders) == 0
        assert await count(session_factory, order_items) == 0
        assert await product_inventory("mug") == 5
        assert await product_inventory("rare") == 2
        assert len(await cart_of(session_factory, "user-1")) == 2

    async def test_order_number_collision_is_retryable(
        self, checkout, seed_product, add_to_cart, session_factory, product_inventory, monkeypatch
    ):
        await seed_product("mug", inventory=5)
        await add_to_cart("user-1", "mug", 1)
        await add_to_cart("user-2", "mug", 1)
        monkeypatch.setattr(pricing, "generate_order_number", lambda: "ORD-FIXED-000000")

        await checkout.execute("user-1", SHIPPING_ADDRESS, "pi_1")
        with pytest.raises(CheckoutConflictError) as exc_info:
            await checkout.execute("user-2", SHIPPING_ADDRESS, "pi_2")

        assert exc_info.value.retryable is True
        assert exc_info.value.http_status == 409
        assert await count(session_factory, orders) == 1
        assert await product_inventory("mug") == 4
        assert len(await cart_of(session_factory, "user-2")) == 1

    async def test_store_fault_is_not_reported_as_conflict(
        self, checkout, seed_product, add_to_cart, engine, session_factory, product_inventory
    ):
        await seed_product("mug", inventory=5)
        await add_to_cart("user-1", "mug", 1)
        async with engine.begin() as conn:
            await conn.run_sync(orders.drop)

        with pytest.raises(OperationalError, match="no such table"):
            await checkout.execute("user-1", SHIPPING_ADDRESS, "pi_1")

        assert await product_inventory("mug") == 5
        assert len(await cart_of(session_factory, "user-1")) == 1

    @pytest.mark.parametrize(
        "user_id,address,reference",
        [
            ("", SHIPPING_ADDRESS, "pi_1"),
            ("user-1", SHIPPING_ADDRESS, ""),
            ("user-1", {**SHIPPING_ADDRESS, "city": ""}, "pi_1"),
            ("user-1", {"name": "Ada"}, "pi_1"),
        ],
    )
    async def test_invalid_input(self, checkout, user_id, address, reference):
        with pytest.raises(ValidationError):
            await checkout.execute(user_id, address, reference)


class TestPriceSnapshot:
    async def test_later_price_change_does_not_touch_order(
        self, place_order, set_price, session_factory
    ):
        order = await place_order(product_id="mug", price=2500)

        await set_price("mug", 9900)

        async with session_factory() as session:
            stored = await queries.get_order(session, order.id)
        assert stored.order_number == order.order_number
        assert stored.items[0].price == 2500
        assert stored.subtotal == 2500

    async def test_uses_current_catalog_price(self, checkout, seed_product, add_to_cart, set_price):
        await seed_product("mug", price=2500)
        await add_to_cart("user-1", "mug", 1)
        await set_price("mug", 3000)

        order = await checkout.execute("user-1", SHIPPING_ADDRESS, "pi_1")

        assert order.items[0].price == 3000


class TestConcurrentCheckout:
    async def test_last_unit_sold_exactly_once(
        self, checkout, seed_product, add_to_cart, session_factory, product_inventory
    ):
        await seed_product("last-one", inventory=1)
        await add_to_cart("alice", "last-one", 1)
        await add_to_cart("bob", "last-one", 1)

        results = await asyncio.gather(
            checkout.execute("alice", SHIPPING_ADDRESS, "pi_alice"),
            checkout.execute("bob", SHIPPING_ADDRESS, "pi_bob"),
            return_exceptions=True,
        )

        placed = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(placed) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InsufficientInventoryError)
        assert failed[0].available == 0
        assert await product_inventory("last-one") == 0
        assert await count(session_factory, orders) == 1

    async def test_many_buyers_never_oversell(
        self, checkout, seed_product, add_to_cart, product_inventory
    ):
        await seed_product("hot", inventory=3)
        buyers = [f"buyer-{i}" for i in range(6)]
        for buyer in buyers:
            await add_to_cart(buyer, "hot", 1)

        results = await asyncio.gather(
            *(checkout.execute(b, SHIPPING_ADDRESS, f"pi_{b}") for b in buyers),
            return_exceptions=True,
        )

        placed = [r for r in results if not isinstance(r, Exception)]
        assert len(placed) == 3
        failed = [r for r in results if isinstance(r, Exception)]
        assert all(isinstance(r, InsufficientInventoryError) for r in failed)
        assert await product_inventory("hot") == 0
