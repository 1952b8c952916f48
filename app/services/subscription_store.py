"""
Subscription Status Store
==========================

One ``user_subscriptions`` row per account, written only by the billing
reconciler and read by the usage charger (premium bypass) and the
entitlement check.

``provider_subscription_id`` is the join key used to map Stripe
subscription lifecycle events back to an account.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import select, update
from sqlmodel import Session

from app.core.database import get_session_context, insert_if_absent, session_scope
from app.models.billing import SubscriptionRecord
from app.models.ledger import SubscriptionState, SubscriptionStatus, is_active_status

logger = logging.getLogger(__name__)

SUBSCRIPTION_FIELDS = frozenset({
    "status",
    "plan",
    "provider_customer_id",
    "provider_subscription_id",
    "current_period_end",
})

_table = SubscriptionRecord.__table__


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _prepare(fields: Mapping[str, Any]) -> dict:
    unknown = set(fields) - SUBSCRIPTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
    values = dict(fields)
    if "status" in values:
        status = (values["status"] or SubscriptionStatus.NONE.value).strip().lower()
        values["status"] = status
        # is_active is always derived, never written independently
        values["is_active"] = is_active_status(status)
    return values


class SubscriptionStore:
    """Upsert-by-account access to ``user_subscriptions``."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or get_session_context

    def get(self, account_id: str, session: Optional[Session] = None) -> Optional[SubscriptionState]:
        with session_scope(session, self._session_factory) as s:
            row = s.connection().execute(
                select(_table).where(_table.c.account_id == account_id)
            ).first()
            return SubscriptionState.from_row(row) if row is not None else None

    def find_by_provider_subscription_id(
        self,
        provider_subscription_id: str,
        session: Optional[Session] = None,
    ) -> Optional[SubscriptionState]:
        if not provider_subscription_id:
            return None
        with session_scope(session, self._session_factory) as s:
            row = s.connection().execute(
                select(_table)
                .where(_table.c.provider_subscription_id == provider_subscription_id)
                .order_by(_table.c.updated_at.desc())
                .limit(1)
            ).first()
            return SubscriptionState.from_row(row) if row is not None else None

    def upsert(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        session: Optional[Session] = None,
    ) -> SubscriptionState:
        """Create the account's row if absent, then merge *fields* in one statement."""
        values = _prepare(fields)
        with session_scope(session, self._session_factory) as s:
            conn = s.connection()
            now = _utcnow()
            initial = {
                "account_id": account_id,
                "status": SubscriptionStatus.NONE.value,
                "is_active": False,
                "plan": None,
                "provider_customer_id": None,
                "provider_subscription_id": None,
                "current_period_end": None,
                "created_at": now,
                "updated_at": now,
            }
            initial.update(values)
            created = insert_if_absent(conn, _table, initial, key="account_id")
            if not created and values:
                conn.execute(
                    update(_table)
                    .where(_table.c.account_id == account_id)
                    .values(**values, updated_at=now)
                )
            row = conn.execute(select(_table).where(_table.c.account_id == account_id)).first()
            return SubscriptionState.from_row(row)

    def update(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        session: Optional[Session] = None,
    ) -> Optional[SubscriptionState]:
        """Merge *fields* into an existing row; returns None if the account has none."""
        values = _prepare(fields)
        with session_scope(session, self._session_factory) as s:
            conn = s.connection()
            result = conn.execute(
                update(_table)
                .where(_table.c.account_id == account_id)
                .values(**values, updated_at=_utcnow())
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(select(_table).where(_table.c.account_id == account_id)).first()
            return SubscriptionState.from_row(row)
