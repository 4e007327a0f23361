"""Hosted checkout session creation."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

import stripe
from catracker.config import Settings, get_settings
from catracker.models import SubscriptionPlan, Transaction, User
from catracker.models.transaction import PAYABLE_SUBSCRIPTION_PLAN
from catracker.services.resilient_call import call_with_retry
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import InvalidRequestError, NotFoundError, PaymentProviderError, TransientError
from api.services.subscription_service import normalize_billing_period

logger = logging.getLogger(__name__)

PAYMENT_TYPES = ("one_time", "subscription")


def build_stripe_client(settings: Settings | None = None) -> stripe.StripeClient:
    settings = settings or get_settings()
    if not settings.stripe_secret_key:
        raise PaymentProviderError("Payment provider is not configured")
    return stripe.StripeClient(settings.stripe_secret_key)


def is_transient_provider_error(exc: BaseException) -> bool:
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return True
    status = getattr(exc, "http_status", None)
    return isinstance(status, int) and status >= 500


def _origin(url: str) -> str | None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def resolve_redirect_url(url: str | None, *, default: str, field_name: str) -> str:
    candidate = (url or "").strip()
    if not candidate:
        return default
    allowed = _origin(get_settings().public_url)
    if allowed is None or _origin(candidate) != allowed:
        raise InvalidRequestError(
            f"Invalid {field_name}: URL must match the configured public origin"
        )
    return candidate


def default_redirect_urls() -> tuple[str, str]:
    base = get_settings().public_url.rstrip("/")
    return (
        f"{base}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        f"{base}/subscription/cancel",
    )


def build_session_params(
    *,
    plan: SubscriptionPlan,
    user: User,
    payment_type: str,
    billing_period: str,
    success_url: str,
    cancel_url: str,
) -> dict[str, Any]:
    params: dict[str, Any] = {
        "customer_email": user.email,
        "mode": "subscription" if payment_type == "subscription" else "payment",
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": {
            "user_id": str(user.id),
            "plan_id": str(plan.id),
            "payment_type": payment_type,
            "billing_period": billing_period,
        },
        "payment_method_types": ["card"],
    }
    if payment_type == "subscription":
        params["line_items"] = [{"price": plan.stripe_price_id, "quantity": 1}]
    else:
        params["line_items"] = [
            {
                "price_data": {
                    "currency": (plan.currency or "usd").lower(),
                    "unit_amount": int(round(plan.price * 100)),
                    "product_data": {
                        "name": plan.name or "Subscription Plan",
                        "description": plan.description or "",
                    },
                },
                "quantity": 1,
            }
        ]
    return params


async def create_checkout(
    db: AsyncSession,
    *,
    user: User,
    plan_id: str | None,
    payment_type: str = "one_time",
    success_url: str | None = None,
    cancel_url: str | None = None,
    client: stripe.StripeClient | None = None,
) -> dict[str, str]:
    """Open a checkout session and record the pending transaction for it."""
    if not plan_id:
        raise InvalidRequestError("plan_id is required")
    if payment_type not in PAYMENT_TYPES:
        raise InvalidRequestError(f"Unsupported payment_type: {payment_type}")
    try:
        plan_uuid = uuid.UUID(str(plan_id))
    except ValueError:
        raise InvalidRequestError("Invalid plan_id")

    plan = await db.get(SubscriptionPlan, plan_uuid)
    if plan is None or plan.status != "published" or not plan.is_active:
        raise NotFoundError("Subscription plan not found")
    if not user.email:
        raise InvalidRequestError("User email not found")
    if payment_type == "subscription" and not plan.stripe_price_id:
        raise InvalidRequestError("Stripe price ID not configured for subscription plan")

    default_success, default_cancel = default_redirect_urls()
    resolved_success = resolve_redirect_url(
        success_url, default=default_success, field_name="success_url"
    )
    resolved_cancel = resolve_redirect_url(
        cancel_url, default=default_cancel, field_name="cancel_url"
    )
    billing_period = normalize_billing_period(plan.billing_period)
    params = build_session_params(
        plan=plan,
        user=user,
        payment_type=payment_type,
        billing_period=billing_period,
        success_url=resolved_success,
        cancel_url=resolved_cancel,
    )

    stripe_client = client or build_stripe_client()

    async def _create_session():
        return await asyncio.to_thread(stripe_client.checkout.sessions.create, params=params)

    try:
        session = await call_with_retry(
            _create_session,
            "stripe checkout.sessions.create",
            retry_if=is_transient_provider_error,
        )
    except stripe.StripeError as exc:
        logger.error("Create checkout session failed for user %s: %s", user.id, exc)
        if is_transient_provider_error(exc):
            raise TransientError(
                "Payment provider is temporarily unavailable", {"provider_error": str(exc)}
            ) from exc
        raise PaymentProviderError(
            "Failed to create checkout session", {"provider_error": str(exc)}
        ) from exc

    now = datetime.now(UTC)
    transaction = Transaction(
        id=uuid.uuid4(),
        reference=session.id,
        amount=plan.price,
        currency=(plan.currency or "usd").lower(),
        status="pending",
        payment_type=payment_type,
        billing_period=billing_period,
        metadata_json={"plan_id": str(plan.id), "checkout_url": session.url},
        user_id=user.id,
        payable_type=PAYABLE_SUBSCRIPTION_PLAN,
        payable_id=plan.id,
        created_at=now,
        updated_at=now,
    )
    db.add(transaction)
    await db.flush()
    logger.info("Checkout session created: %s for user %s", session.id, user.id)
    return {
        "session_id": session.id,
        "checkout_url": session.url,
        "transaction_id": str(transaction.id),
    }
