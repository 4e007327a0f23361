"""Subscription lifecycle writes and the user cache projection.

Every path that mutates a Subscription (payment reconciliation, user
cancellation, the expiry sweep) locks the owning user row first and finishes
with ``sync_user_subscription_cache`` so the projection on ``users`` always
mirrors the row it references.
"""

from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from catracker.models import Subscription, SubscriptionPlan, User
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import NotFoundError, StateConflictError
from api.services.notifications import (
    Notification,
    cancellation_notice,
    expired_notice,
    expiry_reminder_notice,
)

logger = logging.getLogger(__name__)

DEFAULT_BILLING_PERIOD = "monthly"
_BILLING_PERIOD_ALIASES = {
    "month": "monthly",
    "monthly": "monthly",
    "year": "yearly",
    "yearly": "yearly",
    "annual": "yearly",
    "annually": "yearly",
}
NO_SUBSCRIPTION_TYPE = "none"


@dataclass
class SweepResult:
    processed: int = 0
    subscription_ids: list[str] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {"processed": self.processed, "subscription_ids": self.subscription_ids}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_billing_period(value: Any) -> str:
    """Map a billing period tag to ``monthly``/``yearly``; unknown tags fall back to monthly."""
    normalized = _BILLING_PERIOD_ALIASES.get(str(value or "").strip().lower())
    if normalized is None:
        logger.warning(
            "Unrecognized billing period %r; defaulting to %s", value, DEFAULT_BILLING_PERIOD
        )
        return DEFAULT_BILLING_PERIOD
    return normalized


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_period_end(start: datetime, billing_period: Any) -> datetime:
    period = normalize_billing_period(billing_period)
    if period == "yearly":
        return _add_months(start, 12)
    return _add_months(start, 1)


async def lock_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    """Row-lock the user; the serialization point for subscription writers."""
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def find_active_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == "active")
        .limit(1)
    )
    return result.scalars().first()


def sync_user_subscription_cache(
    user: User,
    subscription: Subscription,
    plan_type: str | None,
) -> None:
    """Recompute the full cached projection from ``subscription``."""
    user.active_subscription_id = subscription.id
    user.subscription_status = subscription.status
    user.subscription_type = (
        (plan_type or NO_SUBSCRIPTION_TYPE)
        if subscription.status == "active"
        else NO_SUBSCRIPTION_TYPE
    )
    user.subscription_start = subscription.start_date
    user.subscription_expiry = subscription.end_date


async def _flush_subscription(db: AsyncSession, user_id: uuid.UUID) -> None:
    try:
        await db.flush()
    except IntegrityError as exc:
        raise StateConflictError(
            "Concurrent subscription update", {"user_id": str(user_id)}
        ) from exc


async def apply_subscription_payment(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    plan: SubscriptionPlan,
    billing_period: Any,
    now: datetime | None = None,
) -> Subscription:
    """Extend the user's active subscription or start a new one."""
    now = now or datetime.now(UTC)
    user = await lock_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found", {"user_id": str(user_id)})

    period = normalize_billing_period(billing_period)
    subscription = await find_active_subscription(db, user_id)
    created = subscription is None
    if subscription is not None:
        base = max(_as_utc(subscription.end_date), now)
        subscription.plan = plan
        subscription.plan_id = plan.id
        subscription.billing_period = period
        subscription.end_date = compute_period_end(base, period)
        subscription.auto_renew = True
        subscription.reminder_sent_at = None
        subscription.updated_at = now
        logger.info(
            "Extended subscription %s for user %s until %s",
            subscription.id,
            user_id,
            subscription.end_date.isoformat(),
        )
    else:
        subscription = Subscription(
            user_id=user_id,
            plan=plan,
            plan_id=plan.id,
            status="active",
            start_date=now,
            end_date=compute_period_end(now, period),
            billing_period=period,
            auto_renew=True,
            created_at=now,
            updated_at=now,
        )
        db.add(subscription)
    await _flush_subscription(db, user_id)
    if created:
        logger.info("Created subscription %s for user %s", subscription.id, user_id)

    sync_user_subscription_cache(user, subscription, plan.type)
    await db.flush()
    return subscription


async def cancel_active_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> tuple[Subscription, Notification | None]:
    now = now or datetime.now(UTC)
    user = await lock_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found", {"user_id": str(user_id)})
    subscription = await find_active_subscription(db, user_id)
    if subscription is None:
        raise NotFoundError("No active subscription found")

    subscription.status = "cancelled"
    subscription.auto_renew = False
    subscription.canceled_at = now
    subscription.updated_at = now
    await _flush_subscription(db, user_id)
    sync_user_subscription_cache(user, subscription, None)
    await db.flush()
    logger.info("Cancelled subscription %s for user %s", subscription.id, user_id)
    return subscription, cancellation_notice(user, subscription)


async def expire_due_subscriptions(db: AsyncSession, now: datetime | None = None) -> SweepResult:
    """Expire every active subscription whose ``end_date`` is at or before ``now``.

    This sweep is the only place expiry is detected; between the cutoff and
    the next run a subscription still reads as active.
    """
    now = now or datetime.now(UTC)
    result = await db.execute(
        select(Subscription.id, Subscription.user_id).where(
            Subscription.status == "active",
            Subscription.end_date <= now,
        )
    )
    due = result.all()
    logger.info("Found %d expired subscriptions", len(due))

    sweep = SweepResult()
    for subscription_id, user_id in due:
        user = await lock_user(db, user_id)
        subscription = await db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None or subscription.status != "active":
            continue
        if _as_utc(subscription.end_date) > now:
            # Renewed between the scan and the lock.
            continue
        subscription.status = "expired"
        subscription.updated_at = now
        await db.flush()
        if user is not None:
            sync_user_subscription_cache(user, subscription, None)
            notice = expired_notice(user, subscription)
            if notice is not None:
                sweep.notifications.append(notice)
        sweep.processed += 1
        sweep.subscription_ids.append(str(subscription.id))
        logger.info("Expired subscription %s for user %s", subscription.id, user_id)

    await db.flush()
    return sweep


async def collect_expiry_reminders(
    db: AsyncSession,
    *,
    days: int,
    now: datetime | None = None,
) -> SweepResult:
    """Stamp and return one reminder per active term ending within ``days``."""
    now = now or datetime.now(UTC)
    horizon = now + timedelta(days=days)
    result = await db.execute(
        select(Subscription, User)
        .join(User, User.id == Subscription.user_id)
        .where(
            Subscription.status == "active",
            Subscription.end_date > now,
            Subscription.end_date <= horizon,
            Subscription.reminder_sent_at.is_(None),
        )
    )
    rows = result.all()
    logger.info("Found %d subscriptions expiring within %d days", len(rows), days)

    sweep = SweepResult()
    for subscription, user in rows:
        subscription.reminder_sent_at = now
        sweep.processed += 1
        sweep.subscription_ids.append(str(subscription.id))
        notice = expiry_reminder_notice(user, subscription)
        if notice is not None:
            sweep.notifications.append(notice)
    await db.flush()
    return sweep


async def list_published_plans(db: AsyncSession) -> list[SubscriptionPlan]:
    result = await db.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.status == "published", SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.sort.asc().nulls_last(), SubscriptionPlan.price.asc())
    )
    return list(result.scalars().all())


def _isoformat(value: datetime | None) -> str | None:
    return _as_utc(value).isoformat() if value is not None else None


def serialize_plan(plan: SubscriptionPlan) -> dict[str, Any]:
    return {
        "id": str(plan.id),
        "name": plan.name,
        "description": plan.description,
        "type": plan.type,
        "price": float(plan.price),
        "currency": plan.currency,
        "billing_period": plan.billing_period,
        "sort": plan.sort,
    }


def serialize_subscription(subscription: Subscription) -> dict[str, Any]:
    return {
        "id": str(subscription.id),
        "status": subscription.status,
        "billing_period": subscription.billing_period,
        "start_date": _isoformat(subscription.start_date),
        "end_date": _isoformat(subscription.end_date),
        "auto_renew": subscription.auto_renew,
        "canceled_at": _isoformat(subscription.canceled_at),
        "plan": serialize_plan(subscription.plan) if subscription.plan is not None else None,
    }
