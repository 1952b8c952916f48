"""
Billing Models
==============

SQLModel tables for persistent billing state:
- UsageLedger: per-account seconds buckets (free / paid / top-up).
- SubscriptionRecord: Stripe subscription status per account.
- ProcessedBillingEvent: provider event ids already applied.
- AnalyticsEvent: append-only audit/analytics trail.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint
from sqlmodel import Column, Field, SQLModel, Text


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageLedger(SQLModel, table=True):
    """Seconds ledger for one account. ``version`` is the compare-and-set token."""

    __tablename__ = "user_usage"
    __table_args__ = (
        CheckConstraint("free_used >= 0 AND free_used <= free_total", name="ck_usage_free_bounds"),
        CheckConstraint("paid_used >= 0 AND paid_used <= paid_total", name="ck_usage_paid_bounds"),
        CheckConstraint("topup_balance >= 0", name="ck_usage_topup_nonneg"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(unique=True, index=True, max_length=128)
    free_total: int = Field(default=0)
    free_used: int = Field(default=0)
    paid_total: int = Field(default=0)
    paid_used: int = Field(default=0)
    topup_balance: int = Field(default=0)
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class SubscriptionRecord(SQLModel, table=True):
    """Stripe subscription state for an account."""

    __tablename__ = "user_subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(unique=True, index=True, max_length=128)
    status: str = Field(default="none", max_length=32)
    is_active: bool = Field(default=False)
    plan: Optional[str] = Field(default=None, nullable=True, max_length=64)
    provider_customer_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    provider_subscription_id: Optional[str] = Field(default=None, nullable=True, index=True, max_length=255)
    current_period_end: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ProcessedBillingEvent(SQLModel, table=True):
    """Provider event ids whose effects are already committed."""

    __tablename__ = "billing_events"

    event_id: str = Field(primary_key=True, max_length=255)
    kind: str = Field(max_length=64)
    account_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    processed_at: datetime = Field(default_factory=_utcnow)


class AnalyticsEvent(SQLModel, table=True):
    """Append-only analytics record. ``meta`` holds a JSON object."""

    __tablename__ = "analytics_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(index=True, max_length=128)
    event_name: str = Field(max_length=128)
    meta: str = Field(default="{}", sa_column=Column(Text, nullable=False, default="{}"))
    created_at: datetime = Field(default_factory=_utcnow)
