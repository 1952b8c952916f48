"""
Entitlement Service
===================

Read-only view of "how much can this account still talk". Never creates a
ledger: an account with no row is evaluated as a fresh default ledger.

Premium (active/trialing) accounts report ``premium_display_seconds``
instead of their real balance and are never paywalled.
"""

import logging
from typing import Optional

from app.config import BillingConfig
from app.core.database import get_session_context
from app.models.ledger import Entitlement, is_active_status
from app.services.ledger_store import LedgerStore
from app.services.subscription_store import SubscriptionStore
from app.services.usage_charger import SecondsExhaustedException

logger = logging.getLogger(__name__)


class EntitlementService:

    def __init__(
        self,
        config: BillingConfig,
        ledger_store: Optional[LedgerStore] = None,
        subscription_store: Optional[SubscriptionStore] = None,
        session_factory=None,
    ):
        self._config = config
        session_factory = session_factory or get_session_context
        self._ledger = ledger_store or LedgerStore(
            free_seconds_default=config.free_seconds_default,
            session_factory=session_factory,
        )
        self._subscriptions = subscription_store or SubscriptionStore(session_factory=session_factory)

    def check(self, account_id: str) -> Entitlement:
        """Raise SecondsExhaustedException when a non-premium account is out of time."""
        subscription = self._subscriptions.get(account_id)
        if subscription is not None and (subscription.is_active or is_active_status(subscription.status)):
            return Entitlement(
                account_id=account_id,
                remaining_seconds=self._config.premium_display_seconds,
                is_premium=True,
                plan=subscription.plan,
            )

        ledger = self._ledger.get(account_id) or self._ledger.default_ledger(account_id)
        remaining = ledger.remaining
        if remaining <= 0:
            logger.info("Entitlement exhausted: account=%s", account_id)
            raise SecondsExhaustedException(account_id, remaining_seconds=0, is_premium=False)

        return Entitlement(
            account_id=account_id,
            remaining_seconds=remaining,
            is_premium=False,
            plan=subscription.plan if subscription is not None else None,
        )


# Singleton instance
_entitlement_service: Optional[EntitlementService] = None


def get_entitlement_service() -> EntitlementService:
    """Get the singleton entitlement service."""
    global _entitlement_service
    if _entitlement_service is None:
        from app.config import settings

        _entitlement_service = EntitlementService(settings.billing_config())
    return _entitlement_service
