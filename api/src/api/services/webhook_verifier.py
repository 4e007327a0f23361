"""Signed payment webhook verification."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import stripe

from api.errors import (
    MalformedEvent,
    MissingBody,
    MissingSignature,
    SignatureInvalid,
    VerificationDisabled,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


class EventKind(StrEnum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    UNHANDLED = "unhandled"

    @classmethod
    def from_type(cls, event_type: str) -> EventKind:
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.UNHANDLED
        return kind


@dataclass(frozen=True)
class WebhookEvent:
    """Verified, typed webhook envelope. ``payload`` is ``data.object``."""

    kind: EventKind
    id: str
    type: str
    occurred_at: datetime | None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def metadata(self) -> dict[str, Any]:
        value = self.payload.get("metadata")
        return value if isinstance(value, dict) else {}


def parse_event(body: str) -> WebhookEvent:
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise MalformedEvent("Invalid webhook payload") from exc
    if not isinstance(event, dict):
        raise MalformedEvent("Invalid webhook payload")

    event_id = str(event.get("id") or "").strip()
    event_type = str(event.get("type") or "").strip()
    data = event.get("data")
    if not event_id or not event_type:
        raise MalformedEvent("Invalid webhook payload", {"missing": "id/type"})
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MalformedEvent("Invalid webhook payload", {"missing": "data.object"})

    created = event.get("created")
    occurred_at = (
        datetime.fromtimestamp(created, tz=UTC) if isinstance(created, (int, float)) else None
    )
    return WebhookEvent(
        kind=EventKind.from_type(event_type),
        id=event_id,
        type=event_type,
        occurred_at=occurred_at,
        payload=data["object"],
    )


def verify_webhook_event(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> WebhookEvent:
    """Authenticate ``raw_body`` against the provider signature and parse it.

    The signature is checked over the bytes exactly as received. Without a
    configured secret every event is rejected.
    """
    if not (secret or "").strip():
        logger.error("Webhook signing secret is not configured; rejecting event")
        raise VerificationDisabled("Webhook verification is not configured")
    if not (signature_header or "").strip():
        raise MissingSignature("Missing webhook signature")
    if not raw_body:
        raise MissingBody("Missing webhook body")

    try:
        body = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedEvent("Invalid webhook payload") from exc

    try:
        stripe.WebhookSignature.verify_header(body, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise SignatureInvalid("Invalid webhook signature") from exc

    return parse_event(body)
