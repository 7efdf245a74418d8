"""
Orderflow — payment event processor

Stripe delivers each event at least once, possibly concurrently and out of
order. Processing one delivery:

    Received ─▶ SignatureVerified ─▶ Deduplicated ─▶ Dispatched ─▶ Acknowledged
        │               │                  │               │
        └── 400 ◀───────┘    duplicate ─▶ 200        500 ◀─┘ (ledger: error text)

  - a bad signature is rejected before the ledger is touched
  - the ledger claim decides which delivery does the work
  - the order transition and ledger `processed = true` commit together
  - a failed dispatch is recorded and surfaced as 500; Stripe's redelivery
    is the retry mechanism, there is no retry loop here

The state machine decides every transition against the order's CURRENT
status, so a late or duplicate event that is no longer legal is logged and
dropped rather than applied.
"""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import commands, events, ledger, queries, status_machine
from .errors import SignatureVerificationError, TransientProcessingError
from .events import PaymentEvent, WebhookOutcome
from .models import Order, OrderStatus
from .notifications import Notifier, dispatch
from .payments import PaymentProvider

logger = logging.getLogger(__name__)

Applied = tuple[Order, OrderStatus]


class PaymentEventProcessor:
    def __init__(
        self,
        session_factory: sessionmaker,
        provider: PaymentProvider,
        webhook_secret: str | None,
        *,
        timeout_seconds: float = 5.0,
        claim_timeout: timedelta = ledger.DEFAULT_CLAIM_TIMEOUT,
        notifier: Notifier | None = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        self.claim_timeout = claim_timeout
        self.notifier = notifier
        self._handlers = {
            events.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            events.PAYMENT_FAILED: self._on_payment_failed,
            events.CHARGE_REFUNDED: self._on_charge_refunded,
            events.DISPUTE_CREATED: self._on_dispute_created,
            events.PAYMENT_PROCESSING: self._on_payment_processing,
        }

    async def process(self, body: bytes, signature: str | None) -> WebhookOutcome:
        """
        Handle one delivery.

        Raises SignatureVerificationError / ValidationError for permanent
        rejections and TransientProcessingError when the provider should
        redeliver later.
        """
        # ── Verify ──────────────────────────────────
        if not self.webhook_secret:
            logger.error("Stripe webhook secret is not configured")
            raise TransientProcessingError("Webhook not configured")
        try:
            self.provider.verify_signature(body, signature, self.webhook_secret)
        except SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise
        event = self.provider.parse_event(body)

        # ── Deduplicate ─────────────────────────────
        try:
            async with self.session_factory() as session:
                already_claimed = await ledger.claim(
                    session, event.id, event.type, event.payload, self.claim_timeout
                )
        except DBAPIError as e:
            logger.error("Could not claim event %s (%s): %s", event.id, event.type, e.orig)
            raise TransientProcessingError(f"Could not record event {event.id}") from e

        if already_claimed:
            logger.info("Event %s (%s) already claimed, skipping", event.id, event.type)
            return WebhookOutcome(status="duplicate", event_id=event.id, event_type=event.type)

        # ── Dispatch ────────────────────────────────
        try:
            applied = await asyncio.wait_for(self._dispatch(event), timeout=self.timeout_seconds)
        except Exception as e:
            error = _describe(e, self.timeout_seconds)
            logger.error(
                "Error processing webhook event %s (%s): %s",
                event.id, event.type, error, exc_info=True,
            )
            await self._record_failure(event, error)
            raise TransientProcessingError(f"Webhook processing failed: {error}") from e

        # ── Acknowledge ─────────────────────────────
        outcome = WebhookOutcome(status="processed", event_id=event.id, event_type=event.type)
        if applied is not None:
            order, previous = applied
            outcome.order_id = order.id
            outcome.applied_status = order.status.value
            if self.notifier is not None:
                dispatch(
                    self.notifier.send_status_change(order, previous),
                    f"status change for {order.order_number}",
                )
        return outcome

    async def _dispatch(self, event: PaymentEvent) -> Applied | None:
        handler = self._handlers.get(event.type)
        async with self.session_factory() as session:
            async with session.begin():
                applied = None
                if handler is None:
                    logger.info("Unhandled event type %s (%s)", event.type, event.id)
                else:
                    applied = await handler(session, event)
                await ledger.mark_processed(session, event.id)
        return applied

    async def _record_failure(self, event: PaymentEvent, error: str) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await ledger.mark_failed(session, event.id, error)
        except DBAPIError:
            # The stale-claim timeout lets a later redelivery take over.
            logger.exception("Could not record failure for event %s", event.id)

    async def _apply(
        self,
        session: AsyncSession,
        event: PaymentEvent,
        payment_reference: str | None,
        target: OrderStatus,
        reason: str,
    ) -> Applied | None:
        if not payment_reference:
            logger.warning("Event %s (%s) carries no payment reference", event.id, event.type)
            return None

        order = await queries.find_by_payment_reference(session, payment_reference)
        if order is None:
            logger.warning("No order found for payment reference %s", payment_reference)
            return None

        if not status_machine.is_valid_transition(order.status, target):
            logger.warning(
                "Ignoring %s for order %s: %s",
                event.type, order.order_number,
                status_machine.describe_rejection(order.status, target),
            )
            return None

        updated, previous = await commands.transition_order(
            session,
            order.id,
            target,
            changed_by=f"webhook:{event.id}",
            notes=reason,
            confirmed=True,
            expected=order.status,
        )
        logger.info(
            "Order %s %s -> %s (%s)",
            updated.order_number, previous.value, updated.status.value, reason,
        )
        return updated, previous

    # ── Handlers ─────────────────────────────────

    async def _on_payment_succeeded(self, session: AsyncSession, event: PaymentEvent) -> Applied | None:
        intent = event.payload
        logger.info("Processing payment success for %s, amount=%s", intent.get("id"), intent.get("amount"))
        return await self._apply(session, event, intent.get("id"), OrderStatus.PROCESSING, "Payment succeeded")

    async def _on_payment_failed(self, session: AsyncSession, event: PaymentEvent) -> Applied | None:
        intent = event.payload
        last_error = intent.get("last_payment_error") or {}
        logger.warning(
            "Payment failed for %s: %s",
            intent.get("id"), last_error.get("message", "no reason given"),
        )
        return await self._apply(session, event, intent.get("id"), OrderStatus.CANCELLED, "Payment failed")

    async def _on_charge_refunded(self, session: AsyncSession, event: PaymentEvent) -> Applied | None:
        charge = event.payload
        payment_intent = charge.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        logger.info(
            "Processing refund for charge %s, payment intent %s, amount_refunded=%s",
            charge.get("id"), payment_intent, charge.get("amount_refunded"),
        )
        # Refunds land in CANCELLED; there is no separate REFUNDED status.
        return await self._apply(session, event, payment_intent, OrderStatus.CANCELLED, "Charge refunded")

    async def _on_dispute_created(self, session: AsyncSession, event: PaymentEvent) -> None:
        dispute = event.payload
        logger.warning(
            "Dispute %s opened on charge %s: amount=%s reason=%s",
            dispute.get("id"), dispute.get("charge"), dispute.get("amount"), dispute.get("reason"),
        )

    async def _on_payment_processing(self, session: AsyncSession, event: PaymentEvent) -> None:
        logger.info("Payment processing for %s", event.payload.get("id"))


def _describe(error: BaseException, timeout_seconds: float) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return f"timed out after {timeout_seconds}s"
    if isinstance(error, DBAPIError):
        return f"{type(error).__name__}: {error.orig}"
    return str(error) or type(error).__name__
