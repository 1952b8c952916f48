"""
Usage Charger — Seconds Draw-Down
==================================

PURPOSE:
    Turns a client usage report ("N seconds of conversation happened") into
    a ledger write:

    1. Clamp the report to [0, max_single_report_seconds].
    2. Zero → no-op, the ledger is not touched.
    3. Load (or lazily create) the account's ledger.
    4. Active/trialing subscription → premium bypass, nothing is charged.
    5. Nothing left in any bucket → SecondsExhaustedException (paywall).
    6. Draw free → paid → topup; whatever the buckets cannot absorb is
       dropped, never carried over and never overdrawn.
    7. Persist with compare-and-set on the ledger version; on a lost race
       the whole read/plan/write is redone.

    The planning step is the pure function ``plan_charge()``.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import replace
from typing import Optional

from app.config import BillingConfig
from app.core.database import get_session_context, session_scope
from app.core.errors import TalkTimeError
from app.models.ledger import BucketCharge, ChargeResult, Ledger, is_active_status
from app.services.ledger_store import LedgerStore
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

__all__ = [
    "SecondsExhaustedException",
    "UsageCharger",
    "get_usage_charger",
    "clamp_seconds",
    "plan_charge",
]


class SecondsExhaustedException(Exception):
    """Raised when a non-premium account has no seconds left (paywall)."""

    def __init__(self, account_id: str, remaining_seconds: int = 0, is_premium: bool = False):
        self.account_id = account_id
        self.remaining_seconds = remaining_seconds
        self.is_premium = is_premium
        super().__init__(f"No remaining seconds for account {account_id}")


def clamp_seconds(value, maximum: int) -> int:
    """Coerce a reported amount to an int in [0, maximum]. Garbage counts as 0."""
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or number <= 0:
        return 0
    return int(min(float(maximum), number))


def plan_charge(ledger: Ledger, seconds: int) -> BucketCharge:
    """Split *seconds* across free → paid → topup, capped to what is available."""
    to_charge = max(0, int(seconds))

    from_free = min(ledger.free_remaining, to_charge)
    to_charge -= from_free

    from_paid = min(ledger.paid_remaining, to_charge)
    to_charge -= from_paid

    from_topup = min(ledger.topup_remaining, to_charge)

    return BucketCharge(free=from_free, paid=from_paid, topup=from_topup)


def _apply(ledger: Ledger, buckets: BucketCharge) -> Ledger:
    return replace(
        ledger,
        free_used=min(ledger.free_total, ledger.free_used + buckets.free),
        paid_used=min(ledger.paid_total, ledger.paid_used + buckets.paid),
        topup_balance=max(0, ledger.topup_balance - buckets.topup),
        version=ledger.version + 1,
    )


class UsageCharger:
    """Charges usage reports against an account's ledger."""

    def __init__(
        self,
        config: BillingConfig,
        ledger_store: Optional[LedgerStore] = None,
        subscription_store: Optional[SubscriptionStore] = None,
        session_factory=None,
    ):
        self._config = config
        self._session_factory = session_factory or get_session_context
        self._ledger = ledger_store or LedgerStore(
            free_seconds_default=config.free_seconds_default,
            session_factory=self._session_factory,
        )
        self._subscriptions = subscription_store or SubscriptionStore(
            session_factory=self._session_factory,
        )

    def charge(self, account_id: str, requested_seconds, deadline: Optional[float] = None) -> ChargeResult:
        """Charge one usage report.

        *deadline* is a ``time.monotonic()`` value. A write that would commit
        after it is rolled back and TT-DB-003 is raised instead, so a caller
        that has already given up never leaves a charge behind.
        """
        seconds = clamp_seconds(requested_seconds, self._config.max_single_report_seconds)
        if seconds == 0:
            return ChargeResult(
                charged_seconds=0,
                buckets=BucketCharge(),
                remaining_seconds=None,
                ignored=True,
            )

        subscription = self._subscriptions.get(account_id)
        premium = subscription is not None and (
            subscription.is_active or is_active_status(subscription.status)
        )

        attempts = max(1, self._config.ledger_cas_max_attempts)
        for attempt in range(1, attempts + 1):
            self._check_deadline(account_id, deadline, "before attempt")
            result, exhausted = self._attempt(account_id, seconds, premium, deadline)
            if exhausted:
                logger.info("Usage rejected, no remaining seconds: account=%s requested=%d", account_id, seconds)
                raise SecondsExhaustedException(account_id, remaining_seconds=0)
            if result is not None:
                return result
            logger.warning(
                "Ledger write conflict, retrying charge: account=%s attempt=%d/%d",
                account_id,
                attempt,
                attempts,
            )

        raise TalkTimeError(
            "TT-DB-001",
            detail=f"ledger for {account_id} changed on every one of {attempts} attempts",
            context={"account_id": account_id, "requested_seconds": seconds},
        )

    @staticmethod
    def _check_deadline(account_id: str, deadline: Optional[float], stage: str) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise TalkTimeError(
                "TT-DB-003",
                detail=f"usage charge for {account_id} ran past its deadline ({stage})",
                context={"account_id": account_id, "stage": stage},
            )

    def _attempt(self, account_id: str, seconds: int, premium: bool, deadline: Optional[float] = None):
        """One read/plan/write round. Returns (result | None on conflict, exhausted)."""
        with session_scope(None, self._session_factory) as session:
            ledger = self._ledger.load_for_update(account_id, session)

            if premium:
                logger.info("Premium bypass: account=%s reported=%d", account_id, seconds)
                return ChargeResult(
                    charged_seconds=0,
                    buckets=BucketCharge(),
                    remaining_seconds=ledger.remaining,
                    premium=True,
                    ledger=ledger,
                ), False

            if ledger.remaining <= 0:
                return None, True

            buckets = plan_charge(ledger, seconds)
            updated = _apply(ledger, buckets)
            applied = self._ledger.compare_and_set(
                account_id,
                ledger.version,
                {
                    "free_used": updated.free_used,
                    "paid_used": updated.paid_used,
                    "topup_balance": updated.topup_balance,
                },
                session=session,
            )
            if not applied:
                return None, False
            # raising here rolls the CAS write back
            self._check_deadline(account_id, deadline, "before commit")

        logger.info(
            "Usage charged: account=%s requested=%d charged=%d free=%d paid=%d topup=%d remaining=%d",
            account_id,
            seconds,
            buckets.total,
            buckets.free,
            buckets.paid,
            buckets.topup,
            updated.remaining,
        )
        return ChargeResult(
            charged_seconds=buckets.total,
            buckets=buckets,
            remaining_seconds=updated.remaining,
            ledger=updated,
        ), False


# Singleton instance
_usage_charger: Optional[UsageCharger] = None


def get_usage_charger() -> UsageCharger:
    """Get the singleton usage charger."""
    global _usage_charger
    if _usage_charger is None:
        from app.config import settings

        _usage_charger = UsageCharger(settings.billing_config())
    return _usage_charger
