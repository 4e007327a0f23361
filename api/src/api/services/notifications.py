"""Subscription lifecycle notices."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from catracker.config import get_settings
from catracker.models import Subscription, User

from api.services.email_service import send_transactional_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    kind: str
    to_email: str
    subject: str
    text_body: str


def _format_date(value: datetime | None) -> str:
    if value is None:
        return "unknown"
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%B %d, %Y")


def _greeting(user: User) -> str:
    name = (user.first_name or "").strip()
    return f"Hello {name}," if name else "Hello,"


def _account_url() -> str:
    return f"{get_settings().public_url.rstrip('/')}/account/subscription"


def activation_notice(
    user: User, subscription: Subscription, plan_name: str
) -> Notification | None:
    if not user.email:
        return None
    return Notification(
        kind="subscription_activated",
        to_email=user.email,
        subject="Your subscription is active",
        text_body=(
            f"{_greeting(user)}\n\n"
            f"Thank you for your payment. Your {plan_name} subscription is active "
            f"until {_format_date(subscription.end_date)}.\n\n"
            f"Manage your subscription: {_account_url()}\n"
        ),
    )


def cancellation_notice(user: User, subscription: Subscription) -> Notification | None:
    if not user.email:
        return None
    return Notification(
        kind="subscription_cancelled",
        to_email=user.email,
        subject="Your subscription has been cancelled",
        text_body=(
            f"{_greeting(user)}\n\n"
            "Your subscription has been cancelled and will not renew.\n\n"
            f"You can subscribe again at any time: {_account_url()}\n"
        ),
    )


def expiry_reminder_notice(user: User, subscription: Subscription) -> Notification | None:
    if not user.email:
        return None
    return Notification(
        kind="expiry_reminder",
        to_email=user.email,
        subject="Your subscription is expiring soon",
        text_body=(
            f"{_greeting(user)}\n\n"
            f"Your subscription expires on {_format_date(subscription.end_date)}. "
            "Renew before then to keep uninterrupted access.\n\n"
            f"Renew now: {_account_url()}\n"
        ),
    )


def expired_notice(user: User, subscription: Subscription) -> Notification | None:
    if not user.email:
        return None
    return Notification(
        kind="subscription_expired",
        to_email=user.email,
        subject="Your subscription has expired",
        text_body=(
            f"{_greeting(user)}\n\n"
            f"Your subscription ended on {_format_date(subscription.end_date)}.\n\n"
            f"Renew your subscription: {_account_url()}\n"
        ),
    )


async def deliver_notifications(notifications: Iterable[Notification]) -> int:
    """Send notices one by one. Failures are logged and skipped."""
    delivered = 0
    for notification in notifications:
        sent = await send_transactional_email(
            to_email=notification.to_email,
            subject=notification.subject,
            text_body=notification.text_body,
        )
        if sent:
            delivered += 1
        else:
            logger.warning(
                "Notification %s to %s was not delivered", notification.kind, notification.to_email
            )
    return delivered
