"""Create users and subscription_plans tables.

Revision ID: 001_users_plans
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

revision: str = "001_users_plans"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            primary_key=True,
        ),
        sa.Column("email", sa.Text(), nullable=True, unique=True),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("subscription_status", sa.Text(), nullable=True),
        sa.Column("subscription_type", sa.Text(), nullable=True),
        sa.Column("subscription_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_subscription_id", UUID(as_uuid=True), nullable=True),
    )
    op.create_index("idx_users_subscription_status", "users", ["subscription_status"])

    op.create_table(
        "subscription_plans",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            primary_key=True,
        ),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default=sa.text("'usd'")),
        sa.Column(
            "billing_period", sa.Text(), nullable=False, server_default=sa.text("'monthly'")
        ),
        sa.Column("stripe_price_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column("sort", sa.Integer(), nullable=True),
        sa.CheckConstraint(
            "status IN ('draft','published','archived')", name="ck_subscription_plan_status"
        ),
    )


def downgrade() -> None:
    op.drop_table("subscription_plans")
    op.drop_index("idx_users_subscription_status", table_name="users")
    op.drop_table("users")
