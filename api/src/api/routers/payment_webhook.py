"""Payment provider webhook endpoint."""

from __future__ import annotations

import logging

from catracker.config import get_settings
from catracker.services.resilient_call import call_with_retry
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from api.errors import NotFoundError, StateConflictError, VerificationError
from api.services.notifications import deliver_notifications
from api.services.webhook_dispatcher import DispatchResult, dispatch_event
from api.services.webhook_verifier import verify_webhook_event

logger = logging.getLogger(__name__)
router = APIRouter()

CONFLICT_RETRY_ATTEMPTS = 3
CONFLICT_RETRY_DELAY = 0.05


def _is_state_conflict(exc: BaseException) -> bool:
    return isinstance(exc, StateConflictError)


@router.post("")
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()
    raw_body = await request.body()
    try:
        event = verify_webhook_event(
            raw_body,
            request.headers.get("stripe-signature"),
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
    except VerificationError as exc:
        return JSONResponse(status_code=400, content={"error": exc.message, "reason": exc.reason})

    logger.info("Stripe webhook: %s (%s)", event.type, event.id)

    async def _dispatch_once() -> DispatchResult:
        try:
            return await dispatch_event(db, event)
        except StateConflictError:
            await db.rollback()
            raise

    try:
        result = await call_with_retry(
            _dispatch_once,
            f"webhook {event.id}",
            max_attempts=CONFLICT_RETRY_ATTEMPTS,
            base_delay=CONFLICT_RETRY_DELAY,
            retry_if=_is_state_conflict,
        )
        await db.commit()
    except NotFoundError as exc:
        logger.warning("Webhook %s references missing data: %s", event.id, exc.message)
        await db.commit()
        return {"received": True}
    except Exception:
        logger.exception("Webhook processing error for %s", event.id)
        await db.rollback()
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    if result.notifications:
        background_tasks.add_task(deliver_notifications, result.notifications)
    return {"received": True}
