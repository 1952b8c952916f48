"""processed billing events and analytics trail

Revision ID: 002_billing_events
Revises: 001_initial
Create Date: 2026-03-09
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002_billing_events"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- billing_events (webhook dedup) ---
    op.create_table(
        "billing_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("account_id", sa.String(128), nullable=True),
        sa.Column("processed_at", sa.DateTime, nullable=False),
    )

    # --- analytics_events ---
    op.create_table(
        "analytics_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(128), nullable=False),
        sa.Column("event_name", sa.String(128), nullable=False),
        sa.Column("meta", sa.Text, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_analytics_events_account_id", "analytics_events", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_analytics_events_account_id", table_name="analytics_events")
    op.drop_table("analytics_events")
    op.drop_table("billing_events")
