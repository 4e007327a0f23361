"""Reconciliation engine tests against an in-memory database."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from billing_factories import (
    as_utc,
    checkout_completed,
    create_pending_transaction,
    create_plan,
    create_user,
    payment_intent_event,
)
from catracker.models import Subscription, Transaction, User
from sqlalchemy import func, select

from api.services.reconciliation import (
    handle_checkout_completed,
    handle_payment_failed,
    handle_payment_succeeded,
)
from api.services.subscription_service import cancel_active_subscription, expire_due_subscriptions
from api.services.webhook_verifier import EventKind


async def _active_count(db, user_id) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == "active")
    )
    return result.scalar_one()


async def _assert_cache_consistent(db, user_id) -> None:
    user = await db.get(User, user_id, populate_existing=True)
    if user.active_subscription_id is None:
        assert user.subscription_status is None
        return
    subscription = await db.get(Subscription, user.active_subscription_id, populate_existing=True)
    assert user.subscription_status == subscription.status
    assert as_utc(user.subscription_expiry) == as_utc(subscription.end_date)
    assert as_utc(user.subscription_start) == as_utc(subscription.start_date)


@pytest.mark.asyncio
async def test_completion_is_idempotent_and_latest_amount_wins(db_session):
    user = await create_user(db_session)
    plan = await create_plan(db_session)
    transaction = await create_pending_transaction(db_session, user=user, plan=plan)
    await db_session.commit()

    first = await handle_checkout_completed(db_session, checkout_completed(amount_total=4900))
    await db_session.commit()
    completed_at = as_utc(transaction.completed_at)
    subscription = await db_session.get(Subscription, transaction.subscription_id)
    end_date = as_utc(subscription.end_date)

    second = await handle_checkout_completed(
        db_session, checkout_completed(amount_total=5900, currency="EUR")
    )
    await db_session.commit()

    refreshed = await db_session.get(Transaction, transaction.id, populate_existing=True)
    assert first.status == second.status == "processed"
    assert refreshed.status == "completed"
    assert refreshed.amount == Decimal("59.00")
    assert refreshed.currency == "eur"
    assert refreshed.provider_reference == "pi_1"
    assert as_utc(refreshed.completed_at) == completed_at
    assert await _active_count(db_session, user.id) == 1
    subscription = await db_session.get(Subscription, refreshed.subscription_id, populate_existing=True)
    assert as_utc(subscription.end_date) == end_date
    assert second.notifications == []


@pytest.mark.asyncio
async def test_renewal_extends_existing_subscription_in_place(db_session):
    user = await create_user(db_session)
    plan = await create_plan(db_session, billing_period="monthly")
    await create_pending_transaction(db_session, user=user, plan=plan, reference="sess_a")
    await create_pending_transaction(db_session, user=user, plan=plan, reference="sess_b")
    await db_session.commit()

    now = datetime(2026, 1, 31, 12, 0, tzinfo=UTC)
    await handle_checkout_completed(
        db_session,
        checkout_completed("sess_a", payment_intent="pi_a", metadata={"billing_period": "monthly"}),
        now=now,
    )
    await handle_checkout_completed(
        db_session,
        checkout_completed("sess_b", payment_intent="pi_b", metadata={"billing_period": "monthly"}),
        now=now + timedelta(days=1),
    )
    await db_session.commit()

    result = await db_session.execute(select(Subscription).where(Subscription.user_id == user.id))
    subscriptions = list(result.scalars().all())
    assert len(subscriptions) == 1
    assert subscriptions[0].status == "active"
    # Jan 31 + 1 month clamps to Feb 28, then the renewal adds another month.
    assert as_utc(subscriptions[0].end_date) == datetime(2026, 3, 28, 12, 0, tzinfo=UTC)
    await _assert_cache_consistent(db_session, user.id)


@pytest.mark.asyncio
async def test_completion_projects_subscription_onto_user_cache(db_session):
    user = await create_user(db_session)
    plan = await create_plan(db_session, plan_type="projects")
    await create_pending_transaction(db_session, user=user, plan=plan)
    await db_session.commit()

    outcome = await handle_checkout_completed(db_session, checkout_completed())
    await db_session.commit()

    refreshed = await db_session.get(User, user.id, populate_existing=True)
    assert refreshed.subscription_status == "active"
    assert refreshed.subscription_type == "projects"
    assert str(refreshed.active_subscription_id) == outcome.subscription_id
    assert [n.kind for n in outcome.notifications] == ["subscription_activated"]
    await _assert_cache_consistent(db_session, user.id)


@pytest.mark.asyncio
async def test_cache_stays_consistent_through_cancel_and_expiry(db_session):
    user = await create_user(db_session)
    other = await create_user(db_session, email="u2@test.local")
    plan = await create_plan(db_session)
    await create_pending_transaction(db_session, user=user, plan=plan, reference="sess_u1")
    await create_pending_transaction(db_session, user=other, plan=plan, reference="sess_u2")
    await db_session.commit()

    start = datetime(2026, 1, 1, tzinfo=UTC)
    await handle_checkout_completed(
        db_session, checkout_completed("sess_u1", payment_intent="pi_u1"), now=start
    )
    await handle_checkout_completed(
        db_session, checkout_completed("sess_u2", payment_intent="pi_u2"), now=start
    )
    await db_session.commit()

    await cancel_active_subscription(db_session, user.id)
    await db_session.commit()
    await _assert_cache_consistent(db_session, user.id)
    cancelled = await db_session.get(User, user.id, populate_existing=True)
    assert cancelled.subscription_status == "cancelled"
    assert cancelled.subscription_type == "none"

    sweep = await expire_due_subscriptions(db_session, now=start + timedelta(days=400))
    await db_session.commit()
    assert sweep.processed == 1
    await _assert_cache_consistent(db_session, other.id)
    expired = await db_session.get(User, other.id, populate_existing=True)
    assert expired.subscription_status == "expired"


@pytest.mark.asyncio
async def test_missing_transaction_is_skipped(db_session):
    outcome = await handle_checkout_completed(db_session, checkout_completed("sess_unknown"))
    assert outcome.status == "skipped"


@pytest.mark.asyncio
async def test_missing_billing_period_defaults_to_monthly(db_session, caplog):
    user = await create_user(db_session)
    plan = await create_plan(db_session)
    transaction = await create_pending_transaction(db_session, user=user, plan=plan)
    await db_session.commit()

    now = datetime(2026, 3, 10, tzinfo=UTC)
    with caplog.at_level(logging.WARNING):
        await handle_checkout_completed(db_session, checkout_completed(metadata={}), now=now)
    await db_session.commit()

    subscription = await db_session.get(Subscription, transaction.subscription_id)
    assert subscription.billing_period == "monthly"
    assert as_utc(subscription.end_date) == datetime(2026, 4, 10, tzinfo=UTC)
    assert "defaulting to monthly" in caplog.text


@pytest.mark.asyncio
async def test_payment_failure_merges_reason_into_metadata(db_session):
    user = await create_user(db_session)
    plan = await create_plan(db_session)
    transaction = await create_pending_transaction(
        db_session, user=user, plan=plan, metadata={"plan_id": str(plan.id), "source": "web"}
    )
    transaction.provider_reference = "pi_fail"
    await db_session.commit()

    await handle_payment_failed(
        db_session,
        payment_intent_event(EventKind.PAYMENT_FAILED, "pi_fail", failure_message="Card declined"),
    )
    await db_session.commit()

    refreshed = await db_session.get(Transaction, transaction.id, populate_existing=True)
    assert refreshed.status == "failed"
    assert refreshed.metadata_json == {
        "plan_id": str(plan.id),
        "source": "web",
        "failure_message": "Card declined",
    }


@pytest.mark.asyncio
async def test_payment_failure_does_not_downgrade_completed_transaction(db_session):
    user = await create_user(db_session)
    plan = await create_plan(db_session)
    transaction = await create_pending_transaction(db_session, user=user, plan=plan)
    await db_session.commit()
    await handle_checkout_completed(db_session, checkout_completed(payment_intent="pi_done"))
    await db_session.commit()

    await handle_payment_failed(
        db_session,
        payment_intent_event(EventKind.PAYMENT_FAILED, "pi_done", failure_message="late failure"),
    )
    await db_session.commit()

    refreshed = await db_session.get(Transaction, transaction.id, populate_existing=True)
    assert refreshed.status == "completed"
    assert "failure_message" not in refreshed.metadata_json


@pytest.mark.asyncio
async def test_payment_succeeded_completes_bound_transaction(db_session):
    user = await create_user(db_session)
    plan = await create_plan(db_session)
    transaction = await create_pending_transaction(db_session, user=user, plan=plan)
    transaction.provider_reference = "pi_ok"
    await db_session.commit()

    outcome = await handle_payment_succeeded(
        db_session, payment_intent_event(EventKind.PAYMENT_SUCCEEDED, "pi_ok")
    )
    await db_session.commit()

    refreshed = await db_session.get(Transaction, transaction.id, populate_existing=True)
    assert outcome.status == "processed"
    assert refreshed.status == "completed"
    assert refreshed.completed_at is not None


@pytest.mark.asyncio
async def test_payment_event_for_unknown_intent_is_skipped(db_session):
    outcome = await handle_payment_failed(
        db_session, payment_intent_event(EventKind.PAYMENT_FAILED, "pi_unknown")
    )
    assert outcome.status == "skipped"
