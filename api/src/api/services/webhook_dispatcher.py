"""Route verified webhook events to reconciliation handlers exactly once."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from catracker.models import ProcessedWebhookEvent
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.notifications import Notification
from api.services.reconciliation import (
    ReconcileOutcome,
    handle_checkout_completed,
    handle_payment_failed,
    handle_payment_succeeded,
)
from api.services.webhook_verifier import EventKind, WebhookEvent

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, WebhookEvent], Awaitable[ReconcileOutcome]]

HANDLERS: dict[EventKind, Handler] = {
    EventKind.CHECKOUT_COMPLETED: handle_checkout_completed,
    EventKind.PAYMENT_SUCCEEDED: handle_payment_succeeded,
    EventKind.PAYMENT_FAILED: handle_payment_failed,
}

_missing = set(EventKind) - {EventKind.UNHANDLED} - set(HANDLERS)
if _missing:
    raise RuntimeError(f"No webhook handler registered for {sorted(_missing)}")


@dataclass
class DispatchResult:
    status: str
    notifications: list[Notification] = field(default_factory=list)


async def register_webhook_event(db: AsyncSession, event: WebhookEvent) -> bool:
    """Persist the event id in the current transaction; False if already processed."""
    existing = await db.execute(
        select(ProcessedWebhookEvent.id).where(
            ProcessedWebhookEvent.provider_event_id == event.id
        )
    )
    if existing.scalars().first() is not None:
        return False

    db.add(ProcessedWebhookEvent(provider_event_id=event.id, event_type=event.type))
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        return False
    return True


async def dispatch_event(db: AsyncSession, event: WebhookEvent) -> DispatchResult:
    if not await register_webhook_event(db, event):
        logger.info("Duplicate webhook ignored: %s", event.id)
        return DispatchResult(status="duplicate_ignored")

    if event.kind is EventKind.UNHANDLED:
        logger.info("Unhandled event type: %s", event.type)
        return DispatchResult(status="ignored")

    handler = HANDLERS[event.kind]
    outcome = await handler(db, event)
    logger.info("Webhook %s (%s) %s", event.id, event.type, outcome.status)
    return DispatchResult(status=outcome.status, notifications=outcome.notifications)


async def prune_processed_events(
    db: AsyncSession,
    *,
    retention_days: int,
    now: datetime | None = None,
) -> int:
    cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
    result = await db.execute(
        delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.received_at < cutoff)
    )
    removed = result.rowcount or 0
    if removed:
        logger.info("Pruned %d processed webhook events older than %s", removed, cutoff.isoformat())
    return removed
