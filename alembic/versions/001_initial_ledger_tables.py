"""initial ledger and subscription tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-03-02
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- user_usage ---
    op.create_table(
        "user_usage",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(128), nullable=False),
        sa.Column("free_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("free_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("paid_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("paid_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("topup_balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.CheckConstraint("free_used >= 0 AND free_used <= free_total", name="ck_usage_free_bounds"),
        sa.CheckConstraint("paid_used >= 0 AND paid_used <= paid_total", name="ck_usage_paid_bounds"),
        sa.CheckConstraint("topup_balance >= 0", name="ck_usage_topup_nonneg"),
    )
    op.create_index("ix_user_usage_account_id", "user_usage", ["account_id"], unique=True)

    # --- user_subscriptions ---
    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(128), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("plan", sa.String(64), nullable=True),
        sa.Column("provider_customer_id", sa.String(255), nullable=True),
        sa.Column("provider_subscription_id", sa.String(255), nullable=True),
        sa.Column("current_period_end", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_user_subscriptions_account_id", "user_subscriptions", ["account_id"], unique=True)
    op.create_index(
        "ix_user_subscriptions_provider_subscription_id",
        "user_subscriptions",
        ["provider_subscription_id"],
    )


def downgrade() -> None:
    op.drop_table("user_subscriptions")
    op.drop_table("user_usage")
