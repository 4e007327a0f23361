"""Create subscriptions and transactions tables.

Revision ID: 002_subscriptions_transactions
Revises: 001_users_plans
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

revision: str = "002_subscriptions_transactions"
down_revision: str | None = "001_users_plans"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            primary_key=True,
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "plan_id",
            UUID(as_uuid=True),
            sa.ForeignKey("subscription_plans.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("billing_period", sa.Text(), nullable=False),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint(
            "status IN ('active','cancelled','expired')", name="ck_subscription_status"
        ),
    )
    op.create_index(
        "uq_subscriptions_user_active",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index(
        "idx_subscriptions_status_end_date", "subscriptions", ["status", "end_date"]
    )
    op.create_foreign_key(
        "fk_users_active_subscription",
        "users",
        "subscriptions",
        ["active_subscription_id"],
        ["id"],
        ondelete="SET NULL",
    )

    op.create_table(
        "transactions",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            primary_key=True,
        ),
        sa.Column("reference", sa.Text(), nullable=False, unique=True),
        sa.Column("provider_reference", sa.Text(), nullable=True, unique=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column(
            "payment_type", sa.Text(), nullable=False, server_default=sa.text("'one_time'")
        ),
        sa.Column("billing_period", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("payable_type", sa.Text(), nullable=False),
        sa.Column("payable_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending','completed','failed')", name="ck_transaction_status"
        ),
    )
    op.create_index("idx_transactions_user_id", "transactions", ["user_id"])


def downgrade() -> None:
    op.drop_index("idx_transactions_user_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_constraint("fk_users_active_subscription", "users", type_="foreignkey")
    op.drop_index("idx_subscriptions_status_end_date", table_name="subscriptions")
    op.drop_index("uq_subscriptions_user_active", table_name="subscriptions")
    op.drop_table("subscriptions")
