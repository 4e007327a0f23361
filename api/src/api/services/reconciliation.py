"""Apply verified payment events to transaction and subscription state.

Writes happen in a fixed order (transaction, then subscription, then the user
cache) inside the caller's database transaction. Handlers set absolute values
only, so redelivering an event converges on the same state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from catracker.models import SubscriptionPlan, Transaction, User
from catracker.models.transaction import PAYABLE_SUBSCRIPTION_PLAN
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.notifications import Notification, activation_notice
from api.services.subscription_service import apply_subscription_payment
from api.services.webhook_verifier import WebhookEvent

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    status: str
    transaction_id: str | None = None
    subscription_id: str | None = None
    notifications: list[Notification] = field(default_factory=list)


def _skipped() -> ReconcileOutcome:
    return ReconcileOutcome(status="skipped")


async def _locked_transaction(db: AsyncSession, *criteria: Any) -> Transaction | None:
    result = await db.execute(
        select(Transaction)
        .where(*criteria)
        .limit(1)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


def _amount_from_minor_units(value: Any) -> Decimal | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return Decimal(str(value)) / Decimal(100)


async def handle_checkout_completed(
    db: AsyncSession,
    event: WebhookEvent,
    *,
    now: datetime | None = None,
) -> ReconcileOutcome:
    session = event.payload
    session_id = str(session.get("id") or "").strip()
    if not session_id:
        logger.warning("checkout.session.completed %s carries no session id", event.id)
        return _skipped()

    transaction = await _locked_transaction(db, Transaction.reference == session_id)
    if transaction is None:
        logger.warning("Transaction not found for session: %s", session_id)
        return _skipped()

    now = now or datetime.now(UTC)
    payment_intent = str(session.get("payment_intent") or "").strip()
    if payment_intent:
        if transaction.provider_reference and transaction.provider_reference != payment_intent:
            logger.warning(
                "Transaction %s already bound to payment %s; ignoring %s",
                transaction.id,
                transaction.provider_reference,
                payment_intent,
            )
        else:
            transaction.provider_reference = payment_intent
    if transaction.status != "completed" or transaction.completed_at is None:
        transaction.completed_at = now
    transaction.status = "completed"
    # The latest event is authoritative for the captured amount.
    amount = _amount_from_minor_units(session.get("amount_total"))
    if amount is not None:
        transaction.amount = amount
    currency = str(session.get("currency") or "").strip().lower()
    if currency:
        transaction.currency = currency
    transaction.updated_at = now
    await db.flush()
    logger.info("Transaction updated: %s - Status: completed", transaction.id)

    outcome = ReconcileOutcome(status="processed", transaction_id=str(transaction.id))
    if transaction.payable_type != PAYABLE_SUBSCRIPTION_PLAN:
        return outcome
    if transaction.subscription_id is not None:
        logger.info(
            "Subscription %s already applied for transaction %s",
            transaction.subscription_id,
            transaction.id,
        )
        outcome.subscription_id = str(transaction.subscription_id)
        return outcome

    plan = await db.get(SubscriptionPlan, transaction.payable_id) if transaction.payable_id else None
    if plan is None:
        logger.warning(
            "Plan %s for transaction %s not found; subscription not applied",
            transaction.payable_id,
            transaction.id,
        )
        return outcome

    billing_period = event.metadata.get("billing_period") or transaction.billing_period
    subscription = await apply_subscription_payment(
        db,
        user_id=transaction.user_id,
        plan=plan,
        billing_period=billing_period,
        now=now,
    )
    transaction.subscription_id = subscription.id
    await db.flush()
    outcome.subscription_id = str(subscription.id)

    user = await db.get(User, transaction.user_id)
    notice = activation_notice(user, subscription, plan.name) if user is not None else None
    if notice is not None:
        outcome.notifications.append(notice)
    return outcome


async def handle_payment_succeeded(
    db: AsyncSession,
    event: WebhookEvent,
    *,
    now: datetime | None = None,
) -> ReconcileOutcome:
    intent_id = str(event.payload.get("id") or "").strip()
    if not intent_id:
        return _skipped()
    transaction = await _locked_transaction(db, Transaction.provider_reference == intent_id)
    if transaction is None:
        logger.info("No transaction bound to payment %s yet", intent_id)
        return _skipped()

    outcome = ReconcileOutcome(status="processed", transaction_id=str(transaction.id))
    if transaction.status == "completed":
        return outcome
    now = now or datetime.now(UTC)
    transaction.status = "completed"
    transaction.completed_at = transaction.completed_at or now
    transaction.updated_at = now
    await db.flush()
    logger.info("Payment succeeded for transaction: %s", transaction.id)
    return outcome


async def handle_payment_failed(
    db: AsyncSession,
    event: WebhookEvent,
    *,
    now: datetime | None = None,
) -> ReconcileOutcome:
    intent = event.payload
    intent_id = str(intent.get("id") or "").strip()
    if not intent_id:
        return _skipped()
    transaction = await _locked_transaction(db, Transaction.provider_reference == intent_id)
    if transaction is None:
        logger.warning("Transaction not found for payment: %s", intent_id)
        return _skipped()

    outcome = ReconcileOutcome(status="processed", transaction_id=str(transaction.id))
    if transaction.status == "completed":
        logger.info(
            "Ignoring payment failure for completed transaction %s", transaction.id
        )
        return outcome

    last_error = intent.get("last_payment_error")
    failure_message = last_error.get("message") if isinstance(last_error, dict) else None
    now = now or datetime.now(UTC)
    transaction.status = "failed"
    transaction.metadata_json = {
        **(transaction.metadata_json or {}),
        "failure_message": failure_message,
    }
    transaction.updated_at = now
    await db.flush()
    logger.info("Payment failed for transaction: %s", transaction.id)
    return outcome
