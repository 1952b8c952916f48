"""
Billing Event Reconciler
========================

PURPOSE:
    Applies provider-neutral ``BillingEvent``s to the subscription store
    and the ledger. Stripe delivers webhooks at-least-once and in no
    particular order, so every transition is shaped to be safe to replay:

    - checkout_subscription_completed → subscription active, paid allotment
      reset to the plan's included seconds (``paid_used = 0``).
    - checkout_topup_completed        → ``topup_balance += pack seconds``.
    - subscription_updated            → status / customer / period end sync.
    - subscription_deleted            → canceled, inactive.

    Subscription events never touch the ledger.

IDEMPOTENCY:
    The provider event id is claimed in ``billing_events`` inside the same
    transaction as the state change. A redelivered id finds its claim and
    is acknowledged as ``duplicate`` without re-applying; a failed event
    rolls back its claim so the redelivery runs again.

FAILURE MODEL:
    - Store failures propagate and fail the whole event (retryable).
    - Unresolvable plan on activation → TT-BIL-001 (retryable).
    - Unknown top-up pack, unknown checkout mode, missing account id,
      unknown subscription → acknowledged no-ops.
    - Analytics writes are best-effort and run after commit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select

from app.config import BillingConfig, normalize_identifier
from app.core.database import get_session_context, insert_if_absent, session_scope
from app.core.errors import TalkTimeError
from app.models.billing import ProcessedBillingEvent
from app.models.ledger import (
    BillingEvent,
    BillingEventKind,
    OutcomeStatus,
    ReconcileOutcome,
    SubscriptionStatus,
    is_active_status,
)
from app.services.analytics_service import AnalyticsService
from app.services.ledger_store import LedgerStore
from app.services.plan_resolution import PlanResolver, default_resolvers, resolve_plan
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

__all__ = ["BillingEventReconciler", "get_billing_reconciler"]

_processed = ProcessedBillingEvent.__table__

_Analytics = List[Tuple[str, Dict[str, Any]]]


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class BillingEventReconciler:
    """Idempotent, order-tolerant application of billing events."""

    def __init__(
        self,
        config: BillingConfig,
        ledger_store: Optional[LedgerStore] = None,
        subscription_store: Optional[SubscriptionStore] = None,
        analytics: Optional[AnalyticsService] = None,
        gateway=None,
        resolvers: Optional[Sequence[PlanResolver]] = None,
        session_factory=None,
    ):
        self._config = config
        self._session_factory = session_factory or get_session_context
        self._ledger = ledger_store or LedgerStore(
            free_seconds_default=config.free_seconds_default,
            session_factory=self._session_factory,
        )
        self._subscriptions = subscription_store or SubscriptionStore(session_factory=self._session_factory)
        self._analytics = analytics or AnalyticsService(session_factory=self._session_factory)
        self._gateway = gateway
        self._resolvers = tuple(resolvers) if resolvers is not None else tuple(default_resolvers(config))
        self._handlers = {
            BillingEventKind.CHECKOUT_SUBSCRIPTION_COMPLETED: self._apply_subscription_checkout,
            BillingEventKind.CHECKOUT_TOPUP_COMPLETED: self._apply_topup_checkout,
            BillingEventKind.CHECKOUT_UNKNOWN_MODE: self._apply_unknown_mode,
            BillingEventKind.SUBSCRIPTION_UPDATED: self._apply_subscription_updated,
            BillingEventKind.SUBSCRIPTION_DELETED: self._apply_subscription_deleted,
        }

    def apply(self, event: BillingEvent) -> ReconcileOutcome:
        handler = self._handlers.get(event.kind)
        if handler is None:
            return ReconcileOutcome(OutcomeStatus.IGNORED, event.kind, event.account_id, "unhandled kind")

        if self.is_processed(event.event_id):
            logger.info("Billing event already processed: id=%s kind=%s", event.event_id, event.kind.value)
            return ReconcileOutcome(OutcomeStatus.DUPLICATE, event.kind, event.account_id)

        analytics: _Analytics = []
        outcome = handler(event, analytics)

        for name, meta in analytics:
            self._analytics.record(outcome.account_id, name, meta)

        logger.info(
            "Billing event reconciled: id=%s kind=%s status=%s account=%s detail=%s",
            event.event_id,
            event.kind.value,
            outcome.status.value,
            outcome.account_id,
            outcome.detail,
        )
        return outcome

    def is_processed(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        with session_scope(None, self._session_factory) as session:
            row = session.connection().execute(
                select(_processed.c.event_id).where(_processed.c.event_id == event_id)
            ).first()
            return row is not None

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def _apply_subscription_checkout(self, event: BillingEvent, analytics: _Analytics) -> ReconcileOutcome:
        account_id = event.account_id
        if not account_id:
            return self._missing_account(event)

        plan = resolve_plan(event, self._resolvers, self._gateway)
        included = self._config.included_seconds_for(plan)
        if included <= 0:
            logger.error(
                "No included seconds resolved, refusing activation: account=%s plan=%s subscription=%s",
                account_id,
                plan,
                event.provider_subscription_id,
            )
            self._analytics.record(account_id, "subscription_activation_failed", {
                "plan": plan,
                "stripe_subscription_id": event.provider_subscription_id,
                "reason": "no_included_seconds",
            })
            raise TalkTimeError(
                "TT-BIL-001",
                detail=f"no included seconds for plan {plan!r}",
                context={"account_id": account_id, "event_id": event.event_id},
            )

        with session_scope(None, self._session_factory) as session:
            if not self._claim(event, account_id, session):
                return ReconcileOutcome(OutcomeStatus.DUPLICATE, event.kind, account_id)
            self._subscriptions.upsert(account_id, {
                "status": SubscriptionStatus.ACTIVE.value,
                "plan": plan,
                "provider_customer_id": event.provider_customer_id,
                "provider_subscription_id": event.provider_subscription_id,
                # filled in by the next subscription_updated
                "current_period_end": None,
            }, session=session)
            self._ledger.reset_paid_allotment(account_id, included, session=session)

        analytics.append(("subscription_activated", {
            "plan": plan,
            "stripe_subscription_id": event.provider_subscription_id,
            "stripe_customer_id": event.provider_customer_id,
            "included_seconds": included,
        }))
        return ReconcileOutcome(OutcomeStatus.APPLIED, event.kind, account_id, f"plan={plan}")

    def _apply_topup_checkout(self, event: BillingEvent, analytics: _Analytics) -> ReconcileOutcome:
        account_id = event.account_id
        if not account_id:
            return self._missing_account(event)

        added = self._config.added_seconds_for(event.pack)
        if added <= 0:
            logger.warning("Top-up payment without valid topup_pack: account=%s pack=%r", account_id, event.pack)
            analytics.append(("topup_invalid_pack", {"pack": event.pack}))
            return ReconcileOutcome(OutcomeStatus.IGNORED, event.kind, account_id, "invalid pack")

        with session_scope(None, self._session_factory) as session:
            if not self._claim(event, account_id, session):
                return ReconcileOutcome(OutcomeStatus.DUPLICATE, event.kind, account_id)
            self._ledger.increment_topup(account_id, added, session=session)

        analytics.append(("topup_completed", {
            "pack": normalize_identifier(event.pack),
            "added_seconds": added,
            "stripe_customer_id": event.provider_customer_id,
        }))
        return ReconcileOutcome(OutcomeStatus.APPLIED, event.kind, account_id, f"added={added}")

    def _apply_unknown_mode(self, event: BillingEvent, analytics: _Analytics) -> ReconcileOutcome:
        if not event.account_id:
            return self._missing_account(event)
        logger.warning("checkout.session.completed with unknown mode: %r", event.mode)
        analytics.append(("checkout_unknown_mode", {"mode": event.mode}))
        return ReconcileOutcome(OutcomeStatus.IGNORED, event.kind, event.account_id, f"mode={event.mode}")

    def _missing_account(self, event: BillingEvent) -> ReconcileOutcome:
        logger.warning("Checkout event without metadata.user_id: id=%s", event.event_id)
        return ReconcileOutcome(OutcomeStatus.IGNORED, event.kind, None, "missing user_id")

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    def _apply_subscription_updated(self, event: BillingEvent, analytics: _Analytics) -> ReconcileOutcome:
        fields: Dict[str, Any] = {"current_period_end": event.current_period_end}
        if event.status:
            fields["status"] = event.status
        if event.provider_customer_id:
            fields["provider_customer_id"] = event.provider_customer_id

        outcome = self._update_by_subscription(event, fields)
        if outcome.status is OutcomeStatus.APPLIED:
            analytics.append(("subscription_updated", {
                "status": event.status,
                "is_active": is_active_status(event.status),
                "current_period_end": _iso(event.current_period_end),
                "stripe_subscription_id": event.provider_subscription_id,
            }))
        return outcome

    def _apply_subscription_deleted(self, event: BillingEvent, analytics: _Analytics) -> ReconcileOutcome:
        outcome = self._update_by_subscription(event, {
            "status": SubscriptionStatus.CANCELED.value,
            "current_period_end": None,
        })
        if outcome.status is OutcomeStatus.APPLIED:
            analytics.append(("subscription_deleted", {
                "stripe_subscription_id": event.provider_subscription_id,
            }))
        return outcome

    def _update_by_subscription(self, event: BillingEvent, fields: Dict[str, Any]) -> ReconcileOutcome:
        with session_scope(None, self._session_factory) as session:
            existing = self._subscriptions.find_by_provider_subscription_id(
                event.provider_subscription_id or "", session=session
            )
            if existing is None:
                logger.warning(
                    "%s: no account found for subscription %s",
                    event.kind.value,
                    event.provider_subscription_id,
                )
                return ReconcileOutcome(OutcomeStatus.IGNORED, event.kind, None, "unknown subscription")

            account_id = existing.account_id
            if not self._claim(event, account_id, session):
                return ReconcileOutcome(OutcomeStatus.DUPLICATE, event.kind, account_id)
            updated = self._subscriptions.update(account_id, fields, session=session)

        return ReconcileOutcome(OutcomeStatus.APPLIED, event.kind, account_id, f"status={updated.status}")

    # ------------------------------------------------------------------
    # Dedup
    # ------------------------------------------------------------------

    def _claim(self, event: BillingEvent, account_id: Optional[str], session) -> bool:
        """Record the event id in this transaction. False if another delivery already did."""
        if not event.event_id:
            return True
        return insert_if_absent(
            session.connection(),
            _processed,
            {
                "event_id": event.event_id,
                "kind": event.kind.value,
                "account_id": account_id,
                "processed_at": datetime.now(timezone.utc),
            },
            key="event_id",
        )


# Singleton instance
_reconciler: Optional[BillingEventReconciler] = None


def get_billing_reconciler() -> BillingEventReconciler:
    """Get the singleton reconciler, wired to the Stripe gateway for plan fallbacks."""
    global _reconciler
    if _reconciler is None:
        from app.config import settings
        from app.services.stripe_gateway import get_stripe_gateway

        _reconciler = BillingEventReconciler(
            settings.billing_config(),
            gateway=get_stripe_gateway(),
        )
    return _reconciler
