"""Subscription plan listing, status, cancellation and checkout endpoints."""

from __future__ import annotations

from catracker.models import User
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user, get_db
from api.services.checkout_service import create_checkout
from api.services.notifications import deliver_notifications
from api.services.subscription_service import (
    cancel_active_subscription,
    find_active_subscription,
    list_published_plans,
    serialize_plan,
    serialize_subscription,
)

router = APIRouter()


class SubscribeRequest(BaseModel):
    plan_id: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None
    payment_type: str = "one_time"


@router.get("/plans")
async def get_plans(db: AsyncSession = Depends(get_db)):
    plans = await list_published_plans(db)
    return {"success": True, "data": [serialize_plan(plan) for plan in plans]}


@router.get("/me")
async def get_my_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current active subscription, as last written. Expiry is applied by the daily sweep."""
    subscription = await find_active_subscription(db, user.id)
    if subscription is None:
        return {"success": True, "data": None, "message": "No active subscription"}
    return {"success": True, "data": serialize_subscription(subscription)}


@router.post("/cancel")
async def cancel_subscription(
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _, notice = await cancel_active_subscription(db, user.id)
    await db.commit()
    if notice is not None:
        background_tasks.add_task(deliver_notifications, [notice])
    return {"success": True, "message": "Subscription cancelled successfully"}


@router.post("/subscribe")
async def subscribe(
    req: SubscribeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    checkout = await create_checkout(
        db,
        user=user,
        plan_id=req.plan_id,
        payment_type=req.payment_type,
        success_url=req.success_url,
        cancel_url=req.cancel_url,
    )
    return {"success": True, **checkout}
