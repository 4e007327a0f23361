"""Platform user with the cached subscription projection."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from catracker.models.base import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str | None] = mapped_column(Text, unique=True)
    first_name: Mapped[str | None] = mapped_column(Text)
    last_name: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("TRUE"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    # Denormalized copy of the current subscription row; written only through
    # subscription_service.sync_user_subscription_cache.
    subscription_status: Mapped[str | None] = mapped_column(Text)
    subscription_type: Mapped[str | None] = mapped_column(Text)
    subscription_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    subscription_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    active_subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey(
            "subscriptions.id",
            ondelete="SET NULL",
            use_alter=True,
            name="fk_users_active_subscription",
        ),
    )

    __table_args__ = (Index("idx_users_subscription_status", "subscription_status"),)
