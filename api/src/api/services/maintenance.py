"""Background maintenance loop (expiry sweep, reminders, webhook event retention)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from catracker.config import get_settings
from catracker.database import get_session

from api.services.notifications import deliver_notifications
from api.services.subscription_service import collect_expiry_reminders, expire_due_subscriptions
from api.services.webhook_dispatcher import prune_processed_events

logger = logging.getLogger(__name__)


def parse_daily_schedule(schedule: str) -> tuple[int, int]:
    """Parse a simple daily cron expression: M H * * *."""
    parts = schedule.split()
    if len(parts) != 5:
        raise ValueError(f"Unsupported schedule '{schedule}'. Expected 'M H * * *'.")
    minute_str, hour_str, dom, month, dow = parts
    if dom != "*" or month != "*" or dow != "*":
        raise ValueError(f"Unsupported schedule '{schedule}'. Only daily schedules are supported.")

    minute = int(minute_str)
    hour = int(hour_str)
    if minute < 0 or minute > 59 or hour < 0 or hour > 23:
        raise ValueError(f"Invalid schedule '{schedule}'.")
    return hour, minute


def next_run(now: datetime, hour: int, minute: int) -> datetime:
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return target


async def run_expiry_sweep(now: datetime | None = None) -> dict[str, Any]:
    async with get_session() as db:
        sweep = await expire_due_subscriptions(db, now)
    # Notices go out only after the state change is committed.
    await deliver_notifications(sweep.notifications)
    logger.info("Subscription expiry check completed: %d expired", sweep.processed)
    return sweep.summary()


async def run_expiry_reminders(now: datetime | None = None) -> dict[str, Any]:
    settings = get_settings()
    async with get_session() as db:
        sweep = await collect_expiry_reminders(db, days=settings.expiry_reminder_days, now=now)
    delivered = await deliver_notifications(sweep.notifications)
    logger.info("Expiry reminders: %d due, %d delivered", sweep.processed, delivered)
    return {**sweep.summary(), "delivered": delivered}


async def run_event_retention(now: datetime | None = None) -> int:
    settings = get_settings()
    async with get_session() as db:
        return await prune_processed_events(
            db, retention_days=settings.webhook_event_retention_days, now=now
        )


@dataclass
class ScheduledJob:
    name: str
    hour: int
    minute: int
    run: Callable[[], Awaitable[Any]]
    next_at: datetime


def _build_jobs(now: datetime) -> list[ScheduledJob]:
    settings = get_settings()
    jobs = []
    for name, schedule, run in (
        ("subscription expiry sweep", settings.subscription_expiry_schedule, run_expiry_sweep),
        ("expiry reminders", settings.expiry_reminder_schedule, run_expiry_reminders),
    ):
        try:
            hour, minute = parse_daily_schedule(schedule)
        except ValueError as exc:
            logger.error("Invalid schedule for %s: %s; job disabled", name, exc)
            continue
        target = next_run(now, hour, minute)
        logger.info("Next %s scheduled for %s using '%s'", name, target.isoformat(), schedule)
        jobs.append(ScheduledJob(name, hour, minute, run, target))
    return jobs


async def run_maintenance_worker(
    stop_event: asyncio.Event,
    *,
    poll_interval_seconds: float = 30.0,
) -> None:
    jobs = _build_jobs(datetime.now(UTC))
    retention_interval = timedelta(hours=24)
    last_retention_at: datetime | None = None

    logger.info("Maintenance worker started")
    try:
        while not stop_event.is_set():
            now = datetime.now(UTC)
            for job in jobs:
                if now < job.next_at:
                    continue
                try:
                    await job.run()
                except Exception:
                    logger.exception("Scheduled %s failed", job.name)
                job.next_at = next_run(datetime.now(UTC), job.hour, job.minute)
                logger.info("Next %s scheduled for %s", job.name, job.next_at.isoformat())

            if last_retention_at is None or (now - last_retention_at) >= retention_interval:
                try:
                    await run_event_retention()
                    last_retention_at = datetime.now(UTC)
                except Exception:
                    logger.exception("Scheduled webhook event retention failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_seconds)
            except TimeoutError:
                pass
    finally:
        logger.info("Maintenance worker stopped")
