"""
Orderflow — FastAPI entry point

    uvicorn orderflow.main:create_app --factory

Command endpoints (POST) change state, query endpoints (GET) only read.
The Stripe webhook endpoint answers:
    200 {"received": true}          processed, or a duplicate delivery
    400                             missing / invalid signature, malformed event
    500                             processing failed; Stripe will redeliver
"""

from contextlib import asynccontextmanager
from datetime import timedelta

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine

from . import commands, db, ledger, notifications, queries, status_machine
from .checkout import CheckoutOrchestrator
from .config import Settings, configure_logging
from .errors import OrderflowError, OrderNotFoundError
from .models import OrderStatus, ShippingAddress
from .notifications import LoggingNotifier, Notifier, RedisNotifier
from .payments import PaymentProvider, StripePaymentProvider
from .webhooks import PaymentEventProcessor


# ── Request Models ───────────────────────────────


class CheckoutRequest(BaseModel):
    user_id: str
    shipping_address: ShippingAddress
    payment_reference: str


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    admin_user_id: str
    notes: str | None = None
    confirmed: bool = False


def create_app(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    notifier: Notifier | None = None,
    payment_provider: PaymentProvider | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    engine = engine or db.create_engine(settings.database_url)
    session_factory = db.create_session_factory(engine)

    redis_pool: aioredis.Redis | None = None
    if notifier is None:
        if settings.redis_url:
            redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
            notifier = RedisNotifier(redis_pool)
        else:
            notifier = LoggingNotifier()

    checkout = CheckoutOrchestrator(session_factory, settings, notifier=notifier)
    processor = PaymentEventProcessor(
        session_factory,
        payment_provider or StripePaymentProvider(settings.stripe_signature_tolerance),
        settings.stripe_webhook_secret,
        timeout_seconds=settings.webhook_timeout_seconds,
        claim_timeout=timedelta(seconds=settings.ledger_claim_timeout_seconds),
        notifier=notifier,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        await db.create_schema(engine)
        yield
        await notifications.drain()
        if redis_pool is not None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Orderflow", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.checkout = checkout
    app.state.processor = processor

    @app.exception_handler(OrderflowError)
    async def handle_orderflow_error(request: Request, exc: OrderflowError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    # ── Webhook ──────────────────────────────────

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request):
        """Stripe payment events. The raw body is needed for signature checks."""
        body = await request.body()
        outcome = await processor.process(body, request.headers.get("stripe-signature"))
        if outcome.status == "duplicate":
            return {"received": True, "duplicate": True}
        return {"received": True}

    # ── Command Endpoints (write side) ─────────────

    @app.post("/commands/checkout", status_code=201)
    async def cmd_checkout(req: CheckoutRequest):
        order = await checkout.execute(req.user_id, req.shipping_address, req.payment_reference)
        return order.model_dump(mode="json")

    @app.post("/commands/orders/{order_id}/status")
    async def cmd_update_status(order_id: str, req: StatusUpdateRequest):
        """Admin status change; risky transitions need confirmed=true."""
        order = await commands.update_status(
            session_factory,
            order_id,
            req.status,
            req.admin_user_id,
            notes=req.notes,
            confirmed=req.confirmed,
            notifier=notifier,
        )
        return order.model_dump(mode="json")

    # ── Query Endpoints (read side) ────────────────

    @app.get("/queries/orders")
    async def query_list_orders(user_id: str):
        async with session_factory() as session:
            orders = await queries.list_orders_for_user(session, user_id)
        return [o.model_dump(mode="json") for o in orders]

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(order_id: str):
        async with session_factory() as session:
            order = await queries.get_order(session, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order.model_dump(mode="json")

    @app.get("/queries/orders/{order_id}/history")
    async def query_order_history(order_id: str):
        async with session_factory() as session:
            history = await queries.get_status_history(session, order_id)
        return [h.model_dump(mode="json") for h in history]

    @app.get("/queries/orders/{order_id}/transitions")
    async def query_order_transitions(order_id: str):
        """Statuses an admin may pick next, with warnings for risky ones."""
        async with session_factory() as session:
            order = await queries.get_order(session, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        next_statuses = status_machine.valid_next_statuses(order.status)
        return {
            "status": order.status.value,
            "terminal": status_machine.is_terminal(order.status),
            "valid_next_statuses": [s.value for s in next_statuses],
            "warnings": {
                s.value: status_machine.transition_warning(order.status, s)
                for s in next_statuses
                if status_machine.requires_confirmation(order.status, s)
            },
        }

    @app.get("/queries/webhook-events")
    async def query_webhook_events(processed: bool | None = None, limit: int = 50):
        async with session_factory() as session:
            entries = await ledger.list_entries(session, processed=processed, limit=limit)
        return [e.model_dump(mode="json") for e in entries]

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "orderflow"}

    return app
