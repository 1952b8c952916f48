"""
Tests for plan resolution strategies.
"""

from unittest.mock import MagicMock

import pytest

from app.config import BillingConfig
from app.core.errors import TalkTimeError
from app.models.ledger import BillingEvent, BillingEventKind
from app.services.plan_resolution import (
    PlanResolutionContext,
    PriceIdPlanResolver,
    SessionMetadataPlanResolver,
    default_resolvers,
    resolve_plan,
)


@pytest.fixture
def config():
    return BillingConfig(
        plan_included_seconds={"starter": 7200, "plus": 18000},
        plan_price_ids={"starter": "price_starter", "plus": "price_plus"},
    )


def _event(plan=None, subscription_id="sub_123"):
    return BillingEvent(
        kind=BillingEventKind.CHECKOUT_SUBSCRIPTION_COMPLETED,
        event_id="evt_1",
        account_id="acct_1",
        provider_subscription_id=subscription_id,
        plan=plan,
    )


def _subscription(plan=None, price_id=None):
    return {
        "id": "sub_123",
        "metadata": {"plan": plan} if plan is not None else {},
        "items": {"data": [{"price": {"id": price_id}}]} if price_id else {"data": []},
    }


class TestSessionMetadata:
    @pytest.mark.parametrize("raw,expected", [
        ("Plus", "plus"),
        ("  starter ", "starter"),
        ("", None),
        ("0", None),
        (None, None),
    ])
    def test_normalizes(self, raw, expected):
        ctx = PlanResolutionContext(_event(plan=raw))
        assert SessionMetadataPlanResolver().resolve(ctx) == expected

    def test_session_plan_wins_without_lookup(self, config):
        gateway = MagicMock()
        assert resolve_plan(_event(plan="plus"), default_resolvers(config), gateway) == "plus"
        gateway.retrieve_subscription.assert_not_called()


class TestSubscriptionFallbacks:
    def test_subscription_metadata(self, config):
        gateway = MagicMock()
        gateway.retrieve_subscription.return_value = _subscription(plan="Starter")
        assert resolve_plan(_event(), default_resolvers(config), gateway) == "starter"

    def test_price_id_mapping(self, config):
        gateway = MagicMock()
        gateway.retrieve_subscription.return_value = _subscription(price_id="price_plus")
        assert resolve_plan(_event(plan="0"), default_resolvers(config), gateway) == "plus"

    def test_single_lookup_per_event(self, config):
        gateway = MagicMock()
        gateway.retrieve_subscription.return_value = _subscription(price_id="price_unknown")
        assert resolve_plan(_event(), default_resolvers(config), gateway) is None
        assert gateway.retrieve_subscription.call_count == 1

    def test_context_fetches_subscription_once(self, config):
        gateway = MagicMock()
        gateway.retrieve_subscription.return_value = _subscription(price_id="price_unknown")
        ctx = PlanResolutionContext(_event(), gateway=gateway)
        for resolver in default_resolvers(config):
            resolver.resolve(ctx)
        assert ctx.lookups == 1
        assert gateway.retrieve_subscription.call_count == 1

    def test_lookup_failure_resolves_nothing(self, config):
        gateway = MagicMock()
        gateway.retrieve_subscription.side_effect = TalkTimeError("TT-PRV-002", detail="boom")
        assert resolve_plan(_event(), default_resolvers(config), gateway) is None

    def test_no_subscription_id_skips_lookup(self, config):
        gateway = MagicMock()
        assert resolve_plan(_event(subscription_id=None), default_resolvers(config), gateway) is None
        gateway.retrieve_subscription.assert_not_called()

    def test_price_resolver_without_subscription(self, config):
        ctx = PlanResolutionContext(_event(), gateway=None)
        assert PriceIdPlanResolver(config).resolve(ctx) is None
