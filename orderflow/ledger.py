"""
Orderflow — webhook event ledger

Durable dedupe record for inbound payment events, keyed by the provider's
event id. The UNIQUE constraint on external_event_id is what makes
concurrent deliveries safe: exactly one INSERT wins, and the loser is told
the event is already claimed.

Row lifecycle:
    claim()           processed=false, processing_error=NULL
    mark_processed()  processed=true            (same txn as the side effect)
    mark_failed()     processed=false, error    (re-claimable by a redelivery)

A claim whose worker died without marking anything is re-claimable once it
is older than the claim timeout.
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import WebhookEventEntry
from .schema import webhook_events

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_TIMEOUT = timedelta(minutes=5)


async def claim(
    session: AsyncSession,
    external_event_id: str,
    event_type: str,
    payload: dict,
    claim_timeout: timedelta = DEFAULT_CLAIM_TIMEOUT,
) -> bool:
    """
    Try to take ownership of an event. Returns True if it was already claimed.

    Runs its own short transactions; the session must not be inside one.
    """
    now = datetime.now(timezone.utc)
    try:
        async with session.begin():
            await session.execute(
                insert(webhook_events).values(
                    id=str(uuid4()),
                    external_event_id=external_event_id,
                    event_type=event_type,
                    payload=payload,
                    processed=False,
                    processing_error=None,
                    attempts=1,
                    claimed_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
        return False
    except IntegrityError:
        logger.debug("Event %s already in ledger, checking whether it can be re-claimed",
                     external_event_id)

    async with session.begin():
        result = await session.execute(
            update(webhook_events)
            .where(
                webhook_events.c.external_event_id == external_event_id,
                webhook_events.c.processed.is_(False),
                or_(
                    webhook_events.c.processing_error.is_not(None),
                    webhook_events.c.claimed_at < now - claim_timeout,
                ),
            )
            .values(
                processing_error=None,
                attempts=webhook_events.c.attempts + 1,
                claimed_at=now,
                updated_at=now,
            )
        )
    if result.rowcount == 1:
        logger.info("Re-claimed event %s after an earlier failed attempt", external_event_id)
        return False
    return True


async def mark_processed(session: AsyncSession, external_event_id: str) -> None:
    """Flag the event done. Call inside the transaction that applied its effects."""
    await session.execute(
        update(webhook_events)
        .where(webhook_events.c.external_event_id == external_event_id)
        .values(
            processed=True,
            processing_error=None,
            updated_at=datetime.now(timezone.utc),
        )
    )


async def mark_failed(session: AsyncSession, external_event_id: str, error: str) -> None:
    """Record why processing failed; the event stays unprocessed."""
    await session.execute(
        update(webhook_events)
        .where(
            and_(
                webhook_events.c.external_event_id == external_event_id,
                webhook_events.c.processed.is_(False),
            )
        )
        .values(
            processing_error=error or "unknown error",
            updated_at=datetime.now(timezone.utc),
        )
    )


async def get_entry(session: AsyncSession, external_event_id: str) -> WebhookEventEntry | None:
    result = await session.execute(
        select(webhook_events).where(webhook_events.c.external_event_id == external_event_id)
    )
    row = result.mappings().first()
    return WebhookEventEntry.model_validate(dict(row)) if row else None


async def list_entries(
    session: AsyncSession,
    processed: bool | None = None,
    limit: int = 50,
) -> list[WebhookEventEntry]:
    """Newest first. processed=False lists deliveries still failing or in flight."""
    query = select(webhook_events).order_by(webhook_events.c.created_at.desc()).limit(limit)
    if processed is not None:
        query = query.where(webhook_events.c.processed.is_(processed))
    result = await session.execute(query)
    return [WebhookEventEntry.model_validate(dict(row)) for row in result.mappings().all()]
