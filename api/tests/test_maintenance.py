"""Tests for the scheduled maintenance jobs."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from billing_factories import create_plan, create_user
from catracker.config import Settings
from catracker.models import ProcessedWebhookEvent, Subscription
from sqlalchemy import func, select

from api.services import maintenance
from api.services.subscription_service import apply_subscription_payment


@pytest.mark.parametrize(
    ("schedule", "expected"),
    [("0 0 * * *", (0, 0)), ("30 6 * * *", (6, 30)), ("59 23 * * *", (23, 59))],
)
def test_parse_daily_schedule(schedule, expected):
    assert maintenance.parse_daily_schedule(schedule) == expected


@pytest.mark.parametrize("schedule", ["0 0 * *", "0 0 1 * *", "60 0 * * *", "0 24 * * *"])
def test_parse_daily_schedule_rejects_unsupported(schedule):
    with pytest.raises(ValueError):
        maintenance.parse_daily_schedule(schedule)


def test_next_run_rolls_over_to_tomorrow():
    now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    assert maintenance.next_run(now, 13, 0) == datetime(2026, 3, 1, 13, 0, tzinfo=UTC)
    assert maintenance.next_run(now, 12, 0) == datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
    assert maintenance.next_run(now, 0, 0) == datetime(2026, 3, 2, 0, 0, tzinfo=UTC)


def test_invalid_schedule_disables_only_that_job():
    settings = Settings(SUBSCRIPTION_EXPIRY_SCHEDULE="every day", EXPIRY_REMINDER_SCHEDULE="0 9 * * *")
    with patch("api.services.maintenance.get_settings", return_value=settings):
        jobs = maintenance._build_jobs(datetime(2026, 3, 1, tzinfo=UTC))
    assert [job.name for job in jobs] == ["expiry reminders"]


@pytest.fixture
def patched_session(session_factory):
    @asynccontextmanager
    async def _session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    with patch("api.services.maintenance.get_session", new=_session):
        yield


@pytest.mark.asyncio
async def test_expiry_sweep_delivers_after_commit(session_factory, patched_session):
    start = datetime(2026, 1, 1, tzinfo=UTC)
    async with session_factory() as db:
        user = await create_user(db)
        plan = await create_plan(db, billing_period="monthly")
        subscription = await apply_subscription_payment(
            db, user_id=user.id, plan=plan, billing_period="monthly", now=start
        )
        await db.commit()

    deliver = AsyncMock(return_value=1)
    with patch("api.services.maintenance.deliver_notifications", new=deliver):
        summary = await maintenance.run_expiry_sweep(now=start + timedelta(days=45))

    assert summary == {"processed": 1, "subscription_ids": [str(subscription.id)]}
    (notices,) = deliver.await_args.args
    assert [n.kind for n in notices] == ["subscription_expired"]
    async with session_factory() as db:
        refreshed = await db.get(Subscription, subscription.id)
        assert refreshed.status == "expired"


@pytest.mark.asyncio
async def test_event_retention_prunes_old_events(session_factory, patched_session):
    now = datetime.now(UTC)
    async with session_factory() as db:
        db.add(
            ProcessedWebhookEvent(
                provider_event_id="evt_old",
                event_type="checkout.session.completed",
                received_at=now - timedelta(days=90),
            )
        )
        db.add(
            ProcessedWebhookEvent(
                provider_event_id="evt_new",
                event_type="checkout.session.completed",
                received_at=now - timedelta(days=1),
            )
        )
        await db.commit()

    deleted = await maintenance.run_event_retention(now=now)

    assert deleted == 1
    async with session_factory() as db:
        remaining = await db.execute(select(ProcessedWebhookEvent.provider_event_id))
        assert remaining.scalars().all() == ["evt_new"]
        count = await db.execute(select(func.count()).select_from(ProcessedWebhookEvent))
        assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_worker_stops_when_signalled():
    stop_event = asyncio.Event()
    with (
        patch("api.services.maintenance._build_jobs", return_value=[]),
        patch("api.services.maintenance.run_event_retention", new=AsyncMock(return_value=0)) as prune,
    ):
        task = asyncio.create_task(
            maintenance.run_maintenance_worker(stop_event, poll_interval_seconds=0.01)
        )
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

    prune.assert_awaited_once()
