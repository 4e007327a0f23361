"""Tests for the payment webhook endpoint's acknowledgement contract."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient
from webhook_payloads import make_event_body, sign_payload

from api.errors import NotFoundError, StateConflictError
from api.services.notifications import Notification
from api.services.webhook_dispatcher import DispatchResult

WEBHOOK_PATH = "/ca-stripe-webho"
CHECKOUT_OBJECT = {"id": "sess_1", "amount_total": 4900, "currency": "usd"}


def _signed(body: bytes, **kwargs) -> dict[str, str]:
    return {"stripe-signature": sign_payload(body, **kwargs), "content-type": "application/json"}


@pytest.mark.asyncio
async def test_invalid_signature_returns_400_without_touching_state(client: AsyncClient, mock_db):
    body = make_event_body("checkout.session.completed", CHECKOUT_OBJECT)
    response = await client.post(
        WEBHOOK_PATH, content=body, headers=_signed(body, secret="whsec_wrong")
    )

    assert response.status_code == 400
    assert response.json()["reason"] == "signature_invalid"
    mock_db.execute.assert_not_awaited()
    mock_db.add.assert_not_called()
    mock_db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_signature_returns_400(client: AsyncClient, mock_db):
    body = make_event_body("checkout.session.completed", CHECKOUT_OBJECT)
    response = await client.post(WEBHOOK_PATH, content=body)

    assert response.status_code == 400
    assert response.json() == {"error": "Missing webhook signature", "reason": "missing_signature"}
    mock_db.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_unhandled_event_kind_is_acknowledged(client: AsyncClient, mock_db):
    body = make_event_body("customer.created", {"id": "cus_1"}, event_id="evt_unhandled")
    response = await client.post(WEBHOOK_PATH, content=body, headers=_signed(body))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    mock_db.commit.assert_awaited()


@pytest.mark.asyncio
async def test_duplicate_event_id_skips_handler(client: AsyncClient, mock_db):
    existing_result = MagicMock()
    existing_result.scalars.return_value.first.return_value = object()
    mock_db.execute.return_value = existing_result
    handler = AsyncMock()

    body = make_event_body("checkout.session.completed", CHECKOUT_OBJECT, event_id="evt_dup")
    with patch.dict(
        "api.services.webhook_dispatcher.HANDLERS",
        {"checkout.session.completed": handler},
    ):
        response = await client.post(WEBHOOK_PATH, content=body, headers=_signed(body))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    handler.assert_not_awaited()
    mock_db.add.assert_not_called()


@pytest.mark.asyncio
async def test_handler_failure_returns_500_and_rolls_back(client: AsyncClient, mock_db):
    body = make_event_body("checkout.session.completed", CHECKOUT_OBJECT)
    with patch(
        "api.routers.payment_webhook.dispatch_event",
        new=AsyncMock(side_effect=RuntimeError("database unavailable")),
    ) as dispatch:
        response = await client.post(WEBHOOK_PATH, content=body, headers=_signed(body))

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook processing failed"}
    assert dispatch.await_count == 1
    mock_db.rollback.assert_awaited()
    mock_db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_referenced_data_is_acknowledged(client: AsyncClient, mock_db):
    body = make_event_body("checkout.session.completed", CHECKOUT_OBJECT)
    with patch(
        "api.routers.payment_webhook.dispatch_event",
        new=AsyncMock(side_effect=NotFoundError("User not found")),
    ) as dispatch:
        response = await client.post(WEBHOOK_PATH, content=body, headers=_signed(body))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert dispatch.await_count == 1
    mock_db.commit.assert_awaited_once()
    mock_db.rollback.assert_not_awaited()


@pytest.mark.asyncio
async def test_state_conflict_retries_whole_dispatch(client: AsyncClient, mock_db):
    body = make_event_body("checkout.session.completed", CHECKOUT_OBJECT)
    with patch(
        "api.routers.payment_webhook.dispatch_event",
        new=AsyncMock(
            side_effect=[StateConflictError("race"), DispatchResult(status="processed")]
        ),
    ) as dispatch:
        response = await client.post(WEBHOOK_PATH, content=body, headers=_signed(body))

    assert response.status_code == 200
    assert dispatch.await_count == 2
    mock_db.rollback.assert_awaited_once()
    mock_db.commit.assert_awaited()


@pytest.mark.asyncio
async def test_persistent_state_conflict_returns_500(client: AsyncClient, mock_db):
    body = make_event_body("checkout.session.completed", CHECKOUT_OBJECT)
    with patch(
        "api.routers.payment_webhook.dispatch_event",
        new=AsyncMock(side_effect=StateConflictError("race")),
    ) as dispatch:
        response = await client.post(WEBHOOK_PATH, content=body, headers=_signed(body))

    assert response.status_code == 500
    assert dispatch.await_count == 3


@pytest.mark.asyncio
async def test_notifications_are_sent_after_commit(client: AsyncClient, mock_db):
    notice = Notification(
        kind="subscription_activated",
        to_email="u1@test.local",
        subject="Your subscription is active",
        text_body="Body",
    )
    body = make_event_body("checkout.session.completed", CHECKOUT_OBJECT)
    with (
        patch(
            "api.routers.payment_webhook.dispatch_event",
            new=AsyncMock(return_value=DispatchResult(status="processed", notifications=[notice])),
        ),
        patch(
            "api.routers.payment_webhook.deliver_notifications",
            new=AsyncMock(return_value=1),
        ) as deliver,
    ):
        response = await client.post(WEBHOOK_PATH, content=body, headers=_signed(body))

    assert response.status_code == 200
    mock_db.commit.assert_awaited()
    deliver.assert_awaited_once_with([notice])
