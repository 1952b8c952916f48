"""
Ledger domain types.

Plain dataclasses passed between the stores, the usage charger and the
billing reconciler. The SQL rows live in ``app.models.billing``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


def is_active_status(status: Optional[str]) -> bool:
    """Only active and trialing subscriptions count as premium."""
    return (status or "").strip().lower() in ACTIVE_STATUSES


@dataclass(frozen=True)
class Ledger:
    """Snapshot of one account's seconds buckets."""

    account_id: str
    free_total: int = 0
    free_used: int = 0
    paid_total: int = 0
    paid_used: int = 0
    topup_balance: int = 0
    version: int = 0

    @property
    def free_remaining(self) -> int:
        return max(0, self.free_total - self.free_used)

    @property
    def paid_remaining(self) -> int:
        return max(0, self.paid_total - self.paid_used)

    @property
    def topup_remaining(self) -> int:
        return max(0, self.topup_balance)

    @property
    def remaining(self) -> int:
        return self.free_remaining + self.paid_remaining + self.topup_remaining

    def to_dict(self) -> Dict[str, int]:
        return {
            "free_seconds_total": self.free_total,
            "free_seconds_used": self.free_used,
            "paid_seconds_total": self.paid_total,
            "paid_seconds_used": self.paid_used,
            "topup_seconds_balance": self.topup_balance,
        }

    @classmethod
    def from_row(cls, row) -> "Ledger":
        return cls(
            account_id=row.account_id,
            free_total=row.free_total,
            free_used=row.free_used,
            paid_total=row.paid_total,
            paid_used=row.paid_used,
            topup_balance=row.topup_balance,
            version=row.version,
        )


@dataclass(frozen=True)
class BucketCharge:
    """Seconds drawn from each bucket by a single charge."""

    free: int = 0
    paid: int = 0
    topup: int = 0

    @property
    def total(self) -> int:
        return self.free + self.paid + self.topup

    def to_dict(self) -> Dict[str, int]:
        return {"free": self.free, "paid": self.paid, "topup": self.topup}


@dataclass(frozen=True)
class ChargeResult:
    charged_seconds: int
    buckets: BucketCharge
    remaining_seconds: Optional[int]
    premium: bool = False
    ignored: bool = False
    ledger: Optional[Ledger] = None


@dataclass(frozen=True)
class Entitlement:
    account_id: str
    remaining_seconds: int
    is_premium: bool
    plan: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionState:
    account_id: str
    status: str = SubscriptionStatus.NONE.value
    is_active: bool = False
    plan: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "SubscriptionState":
        return cls(
            account_id=row.account_id,
            status=row.status,
            is_active=row.is_active,
            plan=row.plan,
            provider_customer_id=row.provider_customer_id,
            provider_subscription_id=row.provider_subscription_id,
            current_period_end=row.current_period_end,
        )


class BillingEventKind(str, Enum):
    CHECKOUT_SUBSCRIPTION_COMPLETED = "checkout_subscription_completed"
    CHECKOUT_TOPUP_COMPLETED = "checkout_topup_completed"
    CHECKOUT_UNKNOWN_MODE = "checkout_unknown_mode"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"


@dataclass(frozen=True)
class BillingEvent:
    """Provider-neutral billing event translated from a webhook payload."""

    kind: BillingEventKind
    event_id: Optional[str] = None
    account_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    plan: Optional[str] = None
    pack: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    mode: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ReconcileOutcome:
    status: OutcomeStatus
    kind: BillingEventKind
    account_id: Optional[str] = None
    detail: Optional[str] = None
