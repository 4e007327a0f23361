"""SQLAlchemy ORM models for the billing service."""

from catracker.models.base import Base
from catracker.models.user import User
from catracker.models.subscription_plan import SubscriptionPlan
from catracker.models.subscription import Subscription
from catracker.models.transaction import Transaction
from catracker.models.processed_webhook_event import ProcessedWebhookEvent

__all__ = [
    "Base",
    "User",
    "SubscriptionPlan",
    "Subscription",
    "Transaction",
    "ProcessedWebhookEvent",
]
