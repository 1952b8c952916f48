"""
Plan Resolution
===============

PURPOSE:
    Works out which plan a completed subscription checkout bought. Stripe
    does not always carry it where we put it, so resolution is an ordered
    list of strategies; the first one returning a plan id wins:

    1. SessionMetadataPlanResolver       — checkout session ``metadata.plan``
    2. SubscriptionMetadataPlanResolver  — subscription ``metadata.plan``
    3. PriceIdPlanResolver               — first item's price id → plan

    Strategies 2 and 3 share one subscription lookup through
    ``PlanResolutionContext`` (at most one provider call per event).

    Plan ids are lower-cased and trimmed; "" and "0" count as absent.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, Sequence

from app.config import BillingConfig, normalize_identifier
from app.core.errors import TalkTimeError
from app.models.ledger import BillingEvent
from app.services.stripe_gateway import dig

logger = logging.getLogger(__name__)

__all__ = [
    "PlanResolutionContext",
    "PlanResolver",
    "PriceIdPlanResolver",
    "SessionMetadataPlanResolver",
    "SubscriptionMetadataPlanResolver",
    "default_resolvers",
    "resolve_plan",
]

_UNFETCHED = object()


class SubscriptionSource(Protocol):
    def retrieve_subscription(self, subscription_id: str) -> Any: ...


class PlanResolutionContext:
    """Per-event state shared by the resolvers."""

    def __init__(self, event: BillingEvent, gateway: Optional[SubscriptionSource] = None):
        self.event = event
        self._gateway = gateway
        self._subscription: Any = _UNFETCHED
        self.lookups = 0

    @property
    def subscription(self) -> Any:
        """The provider subscription object, fetched lazily once. None if unavailable."""
        if self._subscription is _UNFETCHED:
            self._subscription = self._fetch()
        return self._subscription

    def _fetch(self) -> Any:
        subscription_id = self.event.provider_subscription_id
        if not subscription_id or self._gateway is None:
            return None
        self.lookups += 1
        try:
            return self._gateway.retrieve_subscription(subscription_id)
        except TalkTimeError as exc:
            logger.warning(
                "Plan fallback lookup failed: subscription=%s code=%s detail=%s",
                subscription_id,
                exc.code,
                exc.detail,
            )
            return None


class PlanResolver(Protocol):
    name: str

    def resolve(self, ctx: PlanResolutionContext) -> Optional[str]: ...


class SessionMetadataPlanResolver:
    name = "session_metadata"

    def resolve(self, ctx: PlanResolutionContext) -> Optional[str]:
        return normalize_identifier(ctx.event.plan or ctx.event.metadata.get("plan"))


class SubscriptionMetadataPlanResolver:
    name = "subscription_metadata"

    def resolve(self, ctx: PlanResolutionContext) -> Optional[str]:
        return normalize_identifier(dig(ctx.subscription, "metadata", "plan"))


class PriceIdPlanResolver:
    name = "price_id"

    def __init__(self, config: BillingConfig):
        self._config = config

    def resolve(self, ctx: PlanResolutionContext) -> Optional[str]:
        price_id = dig(ctx.subscription, "items", "data", 0, "price", "id")
        return self._config.plan_for_price_id(price_id)


def default_resolvers(config: BillingConfig) -> Sequence[PlanResolver]:
    return (
        SessionMetadataPlanResolver(),
        SubscriptionMetadataPlanResolver(),
        PriceIdPlanResolver(config),
    )


def resolve_plan(
    event: BillingEvent,
    resolvers: Sequence[PlanResolver],
    gateway: Optional[SubscriptionSource] = None,
) -> Optional[str]:
    """Run *resolvers* in order; first non-empty plan id wins."""
    ctx = PlanResolutionContext(event, gateway)
    for resolver in resolvers:
        plan = resolver.resolve(ctx)
        if plan:
            logger.debug("Plan resolved: plan=%s via=%s event=%s", plan, resolver.name, event.event_id)
            return plan
    logger.info(
        "Plan unresolved: event=%s resolvers=%d provider_lookups=%d",
        event.event_id,
        len(resolvers),
        ctx.lookups,
    )
    return None
