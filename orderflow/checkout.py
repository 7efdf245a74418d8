"""
Orderflow — checkout orchestrator

Turns a user's cart into an order in ONE database transaction:

  ┌──────────────────────────────────────────────────────────────┐
  │  1. re-read the cart                                         │
  │  2. re-read price / inventory / status of every product      │
  │  3. InventoryGuard: conditional decrement, all or nothing    │
  │  4. insert order + order items (prices snapshotted now)      │
  │  5. delete the cart rows                                     │
  │  6. commit                                                   │
  └──────────────────────────────────────────────────────────────┘

Any failure rolls the whole thing back: no order, no decrement, cart
untouched. The confirmation notification is only scheduled after commit.
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

import pydantic
from sqlalchemy import insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import inventory, pricing, queries
from .cart import CartStore, SqlCartStore
from .catalog import Catalog, SqlCatalog
from .config import Settings
from .db import is_retryable_db_error
from .errors import (
    CheckoutConflictError,
    EmptyCartError,
    InsufficientInventoryError,
    ProductUnavailableError,
    ValidationError,
)
from .models import Order, OrderStatus, ShippingAddress
from .notifications import Notifier, dispatch
from .schema import order_items, orders

logger = logging.getLogger(__name__)


class CheckoutOrchestrator:
    """Cart → Order, atomically."""

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings,
        cart_store: CartStore | None = None,
        catalog: Catalog | None = None,
        notifier: Notifier | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.cart_store = cart_store or SqlCartStore()
        self.catalog = catalog or SqlCatalog()
        self.notifier = notifier

    async def execute(
        self,
        user_id: str,
        shipping_address: ShippingAddress | dict,
        payment_reference: str,
    ) -> Order:
        """
        Place the order. Returns the full Order aggregate.

        Raises EmptyCartError, ProductUnavailableError,
        InsufficientInventoryError or ValidationError for business
        failures, and CheckoutConflictError when the database timed out,
        deadlocked or lost a uniqueness race. Nothing is retried here.
        """
        address = self._validate(user_id, shipping_address, payment_reference)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    order = await self._place(session, user_id, address, payment_reference)
        except DBAPIError as e:
            if not is_retryable_db_error(e):
                raise
            logger.warning("Checkout conflict for user %s: %s", user_id, e.orig)
            raise CheckoutConflictError(
                "Checkout could not be completed due to a conflicting update. Please try again."
            ) from e

        logger.info(
            "Order %s placed for user %s: %d item(s), total=%d",
            order.order_number, user_id, len(order.items), order.total,
        )
        if self.notifier is not None:
            dispatch(
                self.notifier.send_order_confirmation(order),
                f"confirmation for {order.order_number}",
            )
        return order

    @staticmethod
    def _validate(
        user_id: str,
        shipping_address: ShippingAddress | dict,
        payment_reference: str,
    ) -> ShippingAddress:
        if not user_id:
            raise ValidationError("user_id is required")
        if not payment_reference:
            raise ValidationError("payment_reference is required")
        if isinstance(shipping_address, ShippingAddress):
            return shipping_address
        try:
            return ShippingAddress.model_validate(shipping_address)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid shipping address: {e}") from e

    async def _place(
        self,
        session: AsyncSession,
        user_id: str,
        address: ShippingAddress,
        payment_reference: str,
    ) -> Order:
        # ── Step 1: cart ────────────────────────────
        cart = await self.cart_store.list_items(session, user_id)
        if not cart:
            raise EmptyCartError(user_id)

        # ── Step 2: current catalog state ───────────
        lines: list[pricing.PricedLine] = []
        for item in cart:
            product = await self.catalog.get_purchasable_snapshot(session, item.product_id)
            if product is None:
                raise ProductUnavailableError(item.product_id, "not found")
            if not product.purchasable:
                raise ProductUnavailableError(item.product_id, f"{product.status.value.lower()}")
            if product.inventory < item.quantity:
                raise InsufficientInventoryError(product.id, item.quantity, product.inventory)
            lines.append(
                pricing.PricedLine(
                    product_id=product.id,
                    quantity=item.quantity,
                    unit_price=product.price,
                )
            )

        # ── Step 3: decrement stock ─────────────────
        await inventory.reserve(session, [(line.product_id, line.quantity) for line in lines])

        # ── Step 4: order + items ───────────────────
        totals = pricing.calculate_totals(lines, self.settings)
        order_id = str(uuid4())
        now = datetime.now(timezone.utc)
        await session.execute(
            insert(orders).values(
                id=order_id,
                order_number=pricing.generate_order_number(),
                user_id=user_id,
                status=OrderStatus.PENDING.value,
                subtotal=totals.subtotal,
                tax=totals.tax,
                shipping=totals.shipping,
                total=totals.total,
                payment_reference=payment_reference,
                shipping_address=address.model_dump(mode="json"),
                created_at=now,
                updated_at=now,
            )
        )
        await session.execute(
            insert(order_items),
            [
                {
                    "id": str(uuid4()),
                    "order_id": order_id,
                    "product_id": line.product_id,
                    "quantity": line.quantity,
                    "price": line.unit_price,
                }
                for line in lines
            ],
        )

        # ── Step 5: empty the cart ──────────────────
        await self.cart_store.clear(session, user_id)

        return await queries.get_order(session, order_id)
