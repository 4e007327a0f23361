"""Create processed_webhook_events table.

Revision ID: 003_processed_webhook_events
Revises: 002_subscriptions_transactions
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

revision: str = "003_processed_webhook_events"
down_revision: str | None = "002_subscriptions_transactions"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "processed_webhook_events",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            primary_key=True,
        ),
        sa.Column("provider_event_id", sa.Text(), nullable=False, unique=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )
    op.create_index(
        "idx_processed_webhook_events_received_at",
        "processed_webhook_events",
        ["received_at"],
    )


def downgrade() -> None:
    op.drop_index(
        "idx_processed_webhook_events_received_at", table_name="processed_webhook_events"
    )
    op.drop_table("processed_webhook_events")
