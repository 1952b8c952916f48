"""
Tests for StripeGateway — signature verification, event translation and
checkout creation (Stripe API calls mocked).
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import stripe

from app.config import BillingConfig
from app.core.errors import TalkTimeError
from app.models.ledger import BillingEventKind
from app.services.stripe_gateway import StripeGateway

WEBHOOK_SECRET = "whsec_unit_test"


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def config():
    return BillingConfig(
        plan_included_seconds={"starter": 7200, "plus": 18000},
        topup_pack_seconds={"5": 3600, "10": 8400},
        plan_price_ids={"starter": "price_starter", "plus": "price_plus"},
        topup_price_ids={"5": "price_topup_5", "10": "price_topup_10"},
    )


@pytest.fixture
def gateway(config):
    return StripeGateway(
        config,
        secret_key="sk_test_dummy",
        webhook_secret=WEBHOOK_SECRET,
        webhook_tolerance_s=300,
    )


class TestVerifyAndParse:
    def test_valid_signature(self, gateway):
        payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {}}})
        event = gateway.verify_and_parse(payload.encode(), sign(payload))
        assert event["id"] == "evt_1"

    def test_missing_header(self, gateway):
        with pytest.raises(TalkTimeError) as exc_info:
            gateway.verify_and_parse(b"{}", None)
        assert exc_info.value.code == "TT-SEC-003"

    def test_wrong_secret(self, gateway):
        payload = json.dumps({"id": "evt_1", "type": "x"})
        with pytest.raises(TalkTimeError) as exc_info:
            gateway.verify_and_parse(payload.encode(), sign(payload, secret="whsec_other"))
        assert exc_info.value.code == "TT-SEC-003"

    def test_tampered_body(self, gateway):
        payload = json.dumps({"id": "evt_1", "type": "x"})
        header = sign(payload)
        with pytest.raises(TalkTimeError):
            gateway.verify_and_parse(payload.replace("evt_1", "evt_2").encode(), header)

    def test_stale_timestamp(self, gateway):
        payload = json.dumps({"id": "evt_1", "type": "x"})
        header = sign(payload, timestamp=int(time.time()) - 3600)
        with pytest.raises(TalkTimeError) as exc_info:
            gateway.verify_and_parse(payload.encode(), header)
        assert exc_info.value.code == "TT-SEC-003"

    def test_signed_garbage_rejected(self, gateway):
        payload = "not json"
        with pytest.raises(TalkTimeError) as exc_info:
            gateway.verify_and_parse(payload.encode(), sign(payload))
        assert exc_info.value.code == "TT-SEC-003"

    def test_missing_secret_is_config_error(self, config):
        gateway = StripeGateway(config, secret_key="sk_test", webhook_secret=None)
        with pytest.raises(TalkTimeError) as exc_info:
            gateway.verify_and_parse(b"{}", "t=1,v1=abc")
        assert exc_info.value.code == "TT-CFG-001"


class TestToBillingEvent:
    def test_subscription_checkout(self, gateway):
        event = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {
                "mode": "subscription",
                "customer": "cus_1",
                "subscription": "sub_1",
                "metadata": {"user_id": "acct_1", "plan": "plus"},
            }},
        }
        billing_event = gateway.to_billing_event(event)
        assert billing_event.kind is BillingEventKind.CHECKOUT_SUBSCRIPTION_COMPLETED
        assert billing_event.account_id == "acct_1"
        assert billing_event.provider_subscription_id == "sub_1"
        assert billing_event.provider_customer_id == "cus_1"
        assert billing_event.plan == "plus"

    def test_topup_checkout(self, gateway):
        event = {
            "id": "evt_2",
            "type": "checkout.session.completed",
            "data": {"object": {"mode": "payment", "metadata": {"user_id": "acct_1", "topup_pack": "10"}}},
        }
        billing_event = gateway.to_billing_event(event)
        assert billing_event.kind is BillingEventKind.CHECKOUT_TOPUP_COMPLETED
        assert billing_event.pack == "10"

    def test_unknown_mode(self, gateway):
        event = {
            "id": "evt_3",
            "type": "checkout.session.completed",
            "data": {"object": {"mode": "setup", "metadata": {"user_id": "acct_1"}}},
        }
        billing_event = gateway.to_billing_event(event)
        assert billing_event.kind is BillingEventKind.CHECKOUT_UNKNOWN_MODE
        assert billing_event.mode == "setup"

    def test_checkout_without_user(self, gateway):
        event = {"id": "evt_4", "type": "checkout.session.completed", "data": {"object": {"mode": "payment"}}}
        assert gateway.to_billing_event(event).account_id is None

    def test_subscription_updated(self, gateway):
        event = {
            "id": "evt_5",
            "type": "customer.subscription.updated",
            "data": {"object": {
                "id": "sub_1",
                "customer": {"id": "cus_9"},
                "status": "active",
                "current_period_end": 1798761600,
            }},
        }
        billing_event = gateway.to_billing_event(event)
        assert billing_event.kind is BillingEventKind.SUBSCRIPTION_UPDATED
        assert billing_event.provider_subscription_id == "sub_1"
        assert billing_event.provider_customer_id == "cus_9"
        assert billing_event.current_period_end == datetime.fromtimestamp(1798761600, tz=timezone.utc)

    def test_period_end_from_items(self, gateway):
        event = {
            "id": "evt_6",
            "type": "customer.subscription.updated",
            "data": {"object": {
                "id": "sub_1",
                "status": "trialing",
                "items": {"data": [{"current_period_end": 1798761600}]},
            }},
        }
        assert gateway.to_billing_event(event).current_period_end is not None

    def test_subscription_deleted(self, gateway):
        event = {"id": "evt_7", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_1"}}}
        assert gateway.to_billing_event(event).kind is BillingEventKind.SUBSCRIPTION_DELETED

    def test_other_types_ignored(self, gateway):
        assert gateway.to_billing_event({"id": "evt_8", "type": "invoice.paid", "data": {"object": {}}}) is None


class TestCheckout:
    def test_subscription_checkout_params(self, gateway):
        with patch.object(stripe.checkout.Session, "create", return_value={"url": "https://checkout.stripe.com/c/1"}) as create:
            url = gateway.create_subscription_checkout("acct_1", "a@example.com", "Plus", "https://app.example.com/")

        assert url == "https://checkout.stripe.com/c/1"
        kwargs = create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_plus", "quantity": 1}]
        assert kwargs["metadata"] == {"user_id": "acct_1", "plan": "plus"}
        assert kwargs["success_url"] == "https://app.example.com/success"
        assert kwargs["cancel_url"] == "https://app.example.com/pricing"
        assert kwargs["customer_email"] == "a@example.com"

    def test_default_plan_used(self, gateway):
        with patch.object(stripe.checkout.Session, "create", return_value={"url": "u"}) as create:
            gateway.create_subscription_checkout("acct_1", None, None, "https://x")
        assert create.call_args.kwargs["metadata"]["plan"] == "starter"
        assert "customer_email" not in create.call_args.kwargs

    def test_unknown_plan_rejected(self, gateway):
        with pytest.raises(TalkTimeError) as exc_info:
            gateway.create_subscription_checkout("acct_1", None, "gold", "https://x")
        assert exc_info.value.code == "TT-BIL-002"

    def test_topup_checkout_params(self, gateway):
        with patch.object(stripe.checkout.Session, "create", return_value={"url": "u"}) as create:
            gateway.create_topup_checkout("acct_1", None, 10, "https://x")
        kwargs = create.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["metadata"] == {"user_id": "acct_1", "topup_pack": "10"}
        assert kwargs["line_items"][0]["price"] == "price_topup_10"

    def test_unknown_pack_rejected(self, gateway):
        with pytest.raises(TalkTimeError) as exc_info:
            gateway.create_topup_checkout("acct_1", None, 7, "https://x")
        assert exc_info.value.code == "TT-BIL-003"

    def test_missing_secret_key(self, config):
        gateway = StripeGateway(config, secret_key=None, webhook_secret=WEBHOOK_SECRET)
        with pytest.raises(TalkTimeError) as exc_info:
            gateway.create_topup_checkout("acct_1", None, 5, "https://x")
        assert exc_info.value.code == "TT-CFG-002"

    def test_stripe_error_is_provider_error(self, gateway):
        with patch.object(stripe.checkout.Session, "create", side_effect=stripe.InvalidRequestError("bad", "price")):
            with pytest.raises(TalkTimeError) as exc_info:
                gateway.create_topup_checkout("acct_1", None, 5, "https://x")
        assert exc_info.value.code == "TT-PRV-002"


class TestRetrieveSubscription:
    def test_returns_provider_object(self, gateway):
        sub = {"id": "sub_1", "metadata": {"plan": "plus"}}
        with patch.object(stripe.Subscription, "retrieve", return_value=sub) as retrieve:
            assert gateway.retrieve_subscription("sub_1") == sub
        assert retrieve.call_args.args[0] == "sub_1"

    def test_connection_error_is_retryable_timeout(self, gateway):
        with patch.object(stripe.Subscription, "retrieve", side_effect=stripe.APIConnectionError("down")):
            with pytest.raises(TalkTimeError) as exc_info:
                gateway.retrieve_subscription("sub_1")
        assert exc_info.value.code == "TT-PRV-001"

    def test_not_found_is_provider_error(self, gateway):
        err = MagicMock(side_effect=stripe.InvalidRequestError("No such subscription", "id"))
        with patch.object(stripe.Subscription, "retrieve", err):
            with pytest.raises(TalkTimeError) as exc_info:
                gateway.retrieve_subscription("sub_missing")
        assert exc_info.value.code == "TT-PRV-002"
