"""
Tests for EntitlementService and SubscriptionStore.
"""

from datetime import datetime, timezone

import pytest

from app.config import BillingConfig
from app.services.entitlement_service import EntitlementService
from app.services.ledger_store import LedgerStore
from app.services.subscription_store import SubscriptionStore
from app.services.usage_charger import SecondsExhaustedException


@pytest.fixture
def ledger_store():
    return LedgerStore(free_seconds_default=120)


@pytest.fixture
def subscription_store():
    return SubscriptionStore()


@pytest.fixture
def service(ledger_store, subscription_store):
    return EntitlementService(
        BillingConfig(free_seconds_default=120, premium_display_seconds=999_999),
        ledger_store=ledger_store,
        subscription_store=subscription_store,
    )


class TestEntitlementCheck:
    def test_missing_ledger_evaluated_as_default(self, service, ledger_store, account_id):
        entitlement = service.check(account_id)
        assert entitlement.remaining_seconds == 120
        assert entitlement.is_premium is False
        assert ledger_store.get(account_id) is None

    def test_remaining_reflects_all_buckets(self, service, ledger_store, account_id):
        ledger_store.upsert(account_id, {"free_total": 120, "free_used": 20, "paid_total": 60, "topup_balance": 40})
        assert service.check(account_id).remaining_seconds == 200

    def test_exhausted_raises(self, service, ledger_store, account_id):
        ledger_store.upsert(account_id, {"free_used": 120})
        with pytest.raises(SecondsExhaustedException) as exc_info:
            service.check(account_id)
        assert exc_info.value.is_premium is False
        assert exc_info.value.remaining_seconds == 0

    def test_premium_shows_display_value(self, service, ledger_store, subscription_store, account_id):
        ledger_store.upsert(account_id, {"free_used": 120})
        subscription_store.upsert(account_id, {"status": "active", "plan": "plus"})
        entitlement = service.check(account_id)
        assert entitlement.is_premium is True
        assert entitlement.remaining_seconds == 999_999
        assert entitlement.plan == "plus"

    def test_canceled_subscription_not_premium(self, service, subscription_store, account_id):
        subscription_store.upsert(account_id, {"status": "canceled", "plan": "starter"})
        entitlement = service.check(account_id)
        assert entitlement.is_premium is False
        assert entitlement.remaining_seconds == 120


class TestSubscriptionStore:
    def test_upsert_derives_is_active(self, subscription_store, account_id):
        state = subscription_store.upsert(account_id, {"status": "ACTIVE "})
        assert state.status == "active"
        assert state.is_active is True

        state = subscription_store.upsert(account_id, {"status": "past_due"})
        assert state.is_active is False

    def test_one_row_per_account(self, subscription_store, account_id):
        subscription_store.upsert(account_id, {"status": "active", "provider_subscription_id": "sub_1"})
        subscription_store.upsert(account_id, {"status": "active", "provider_subscription_id": "sub_2"})
        assert subscription_store.find_by_provider_subscription_id("sub_2").account_id == account_id

    def test_find_by_provider_subscription_id(self, subscription_store, account_id):
        sub_id = f"sub_{account_id}"
        subscription_store.upsert(account_id, {"status": "active", "provider_subscription_id": sub_id})
        found = subscription_store.find_by_provider_subscription_id(sub_id)
        assert found is not None
        assert found.account_id == account_id
        assert subscription_store.find_by_provider_subscription_id("sub_missing") is None
        assert subscription_store.find_by_provider_subscription_id("") is None

    def test_update_missing_returns_none(self, subscription_store, account_id):
        assert subscription_store.update(account_id, {"status": "canceled"}) is None

    def test_update_sets_period_end(self, subscription_store, account_id):
        subscription_store.upsert(account_id, {"status": "active"})
        period_end = datetime(2026, 11, 1, tzinfo=timezone.utc)
        state = subscription_store.update(account_id, {"current_period_end": period_end})
        assert state.current_period_end.replace(tzinfo=None) == period_end.replace(tzinfo=None)
        assert state.status == "active"

    def test_unknown_field_rejected(self, subscription_store, account_id):
        with pytest.raises(ValueError):
            subscription_store.upsert(account_id, {"is_active": True})
