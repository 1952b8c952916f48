"""
Stripe Gateway — Webhooks, Subscriptions & Checkout
=====================================================

PURPOSE:
    The only module that talks to Stripe.

    1. **verify_and_parse()** — checks the ``Stripe-Signature`` header
       against the webhook secret and returns the decoded event.
    2. **to_billing_event()** — translates the handful of Stripe event types
       the ledger cares about into a provider-neutral ``BillingEvent``.
       Everything else maps to ``None`` and is acknowledged untouched.
    3. **retrieve_subscription()** — subscription lookup used by plan
       resolution.
    4. **create_subscription_checkout() / create_topup_checkout()** — hosted
       Checkout Sessions tagged with ``metadata[user_id]`` so the webhook can
       find the account again.

CONFIGURATION (env vars with TALKTIME_ prefix):
    TALKTIME_STRIPE_SECRET_KEY          — Stripe secret API key
    TALKTIME_STRIPE_WEBHOOK_SECRET      — Stripe webhook signing secret
    TALKTIME_STRIPE_WEBHOOK_TOLERANCE_S — Signature timestamp tolerance (300)
    TALKTIME_PLAN_PRICE_IDS             — {"starter": "price_..."}
    TALKTIME_TOPUP_PRICE_IDS            — {"5": "price_...", ...}
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from app.config import BillingConfig, normalize_identifier
from app.core.errors import TalkTimeError
from app.models.ledger import BillingEvent, BillingEventKind

logger = logging.getLogger(__name__)

__all__ = ["StripeGateway", "dig", "get_stripe_gateway"]

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def dig(obj: Any, *path: Any) -> Any:
    """Walk dicts, lists and StripeObjects by key/index. Missing → None."""
    current = obj
    for key in path:
        if current is None:
            return None
        try:
            current = current[key]
        except (KeyError, IndexError, TypeError, AttributeError):
            return None
    return current


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields like ``customer`` are an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return dig(value, "id")


def _from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class StripeGateway:
    """Stripe adapter used by the webhook, the checkout endpoints and plan resolution."""

    def __init__(
        self,
        config: BillingConfig,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        webhook_tolerance_s: int = 300,
        timeout_s: float = 10.0,
        default_plan: str = "starter",
    ):
        self._config = config
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._tolerance = webhook_tolerance_s
        self._timeout_s = timeout_s
        self._default_plan = default_plan
        self._http_client = None

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    @property
    def webhook_configured(self) -> bool:
        return bool(self._webhook_secret)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_and_parse(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify the signature and decode the event body.

        Raises:
            TalkTimeError TT-CFG-001: webhook secret not configured.
            TalkTimeError TT-SEC-003: missing/invalid signature or malformed body.
        """
        if not self._webhook_secret:
            raise TalkTimeError("TT-CFG-001", detail="stripe webhook secret is not configured")
        if not signature_header:
            raise TalkTimeError("TT-SEC-003", detail="missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
            stripe.WebhookSignature.verify_header(
                body,
                signature_header,
                self._webhook_secret,
                self._tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise TalkTimeError("TT-SEC-003", detail=f"signature verification failed: {exc}")
        except UnicodeDecodeError as exc:
            raise TalkTimeError("TT-SEC-003", detail=f"payload is not utf-8: {exc}")

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise TalkTimeError("TT-SEC-003", detail=f"payload is not JSON: {exc}")
        if not isinstance(event, dict) or not event.get("type"):
            raise TalkTimeError("TT-SEC-003", detail="payload is not a Stripe event")

        logger.info("Stripe event received: type=%s id=%s", event.get("type"), event.get("id"))
        return event

    def to_billing_event(self, event: Dict[str, Any]) -> Optional[BillingEvent]:
        """Translate a verified Stripe event. Unhandled types return None."""
        event_type = event.get("type")
        event_id = event.get("id")
        obj = dig(event, "data", "object") or {}

        if event_type == CHECKOUT_COMPLETED:
            metadata = dict(dig(obj, "metadata") or {})
            mode = dig(obj, "mode")
            if mode == "subscription":
                kind = BillingEventKind.CHECKOUT_SUBSCRIPTION_COMPLETED
            elif mode == "payment":
                kind = BillingEventKind.CHECKOUT_TOPUP_COMPLETED
            else:
                kind = BillingEventKind.CHECKOUT_UNKNOWN_MODE
            return BillingEvent(
                kind=kind,
                event_id=event_id,
                account_id=(metadata.get("user_id") or None),
                provider_customer_id=_id_of(dig(obj, "customer")),
                provider_subscription_id=_id_of(dig(obj, "subscription")),
                plan=metadata.get("plan"),
                pack=metadata.get("topup_pack"),
                mode=mode,
                metadata=metadata,
            )

        if event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
            kind = (
                BillingEventKind.SUBSCRIPTION_UPDATED
                if event_type == SUBSCRIPTION_UPDATED
                else BillingEventKind.SUBSCRIPTION_DELETED
            )
            # Newer API versions moved the period onto the subscription items
            period_end = dig(obj, "current_period_end") or dig(obj, "items", "data", 0, "current_period_end")
            return BillingEvent(
                kind=kind,
                event_id=event_id,
                provider_customer_id=_id_of(dig(obj, "customer")),
                provider_subscription_id=_id_of(dig(obj, "id")),
                status=dig(obj, "status"),
                current_period_end=_from_epoch(period_end),
                metadata=dict(dig(obj, "metadata") or {}),
            )

        logger.debug("Ignoring Stripe event type=%s id=%s", event_type, event_id)
        return None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def retrieve_subscription(self, subscription_id: str):
        """Fetch a subscription object. Provider failures raise TT-PRV-*."""
        self._require_key()
        try:
            return stripe.Subscription.retrieve(subscription_id, api_key=self._secret_key)
        except stripe.APIConnectionError as exc:
            raise TalkTimeError(
                "TT-PRV-001",
                detail=f"subscription lookup failed: {exc}",
                context={"subscription_id": subscription_id},
            )
        except stripe.StripeError as exc:
            raise TalkTimeError(
                "TT-PRV-002",
                detail=f"subscription lookup failed: {exc}",
                context={"subscription_id": subscription_id},
            )

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_subscription_checkout(
        self,
        account_id: str,
        email: Optional[str],
        plan: Optional[str],
        origin: str,
    ) -> str:
        plan_id = normalize_identifier(plan) or normalize_identifier(self._default_plan)
        price_id = self._plan_price_id(plan_id)
        if not plan_id or self._config.included_seconds_for(plan_id) <= 0 or not price_id:
            raise TalkTimeError("TT-BIL-002", detail=f"no purchasable plan {plan!r}", context={"plan": plan})

        metadata = {"user_id": account_id, "plan": plan_id}
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": metadata,
            "subscription_data": {"metadata": dict(metadata)},
        }
        url = self._create_checkout(params, email, origin)
        logger.info("Subscription checkout created: account=%s plan=%s", account_id, plan_id)
        return url

    def create_topup_checkout(
        self,
        account_id: str,
        email: Optional[str],
        pack: Any,
        origin: str,
    ) -> str:
        pack_id = normalize_identifier(pack)
        price_id = self._config.topup_price_ids.get(pack_id) if pack_id else None
        if not pack_id or self._config.added_seconds_for(pack_id) <= 0 or not price_id:
            raise TalkTimeError("TT-BIL-003", detail=f"no purchasable top-up pack {pack!r}", context={"pack": pack})

        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": {"user_id": account_id, "topup_pack": pack_id},
        }
        url = self._create_checkout(params, email, origin)
        logger.info("Top-up checkout created: account=%s pack=%s", account_id, pack_id)
        return url

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _plan_price_id(self, plan_id: Optional[str]) -> Optional[str]:
        if not plan_id:
            return None
        for plan, price_id in self._config.plan_price_ids.items():
            if normalize_identifier(plan) == plan_id:
                return price_id or None
        return None

    def _create_checkout(self, params: Dict[str, Any], email: Optional[str], origin: str) -> str:
        self._require_key()
        origin = origin.rstrip("/")
        params = dict(params, success_url=f"{origin}/success", cancel_url=f"{origin}/pricing")
        if email:
            params["customer_email"] = email
        try:
            session = stripe.checkout.Session.create(api_key=self._secret_key, **params)
        except stripe.APIConnectionError as exc:
            raise TalkTimeError("TT-PRV-001", detail=f"checkout creation failed: {exc}")
        except stripe.StripeError as exc:
            raise TalkTimeError("TT-PRV-002", detail=f"checkout creation failed: {exc}")

        url = dig(session, "url")
        if not url:
            raise TalkTimeError("TT-PRV-002", detail="checkout session has no url")
        return url

    def _require_key(self) -> None:
        if not self._secret_key:
            raise TalkTimeError("TT-CFG-002", detail="stripe secret key is not configured")
        if self._http_client is None:
            self._http_client = stripe.new_default_http_client(timeout=self._timeout_s)
            stripe.default_http_client = self._http_client


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_gateway: Optional[StripeGateway] = None


def get_stripe_gateway() -> StripeGateway:
    """Get the shared gateway built from settings."""
    global _gateway
    if _gateway is None:
        from app.config import settings

        _gateway = StripeGateway(
            config=settings.billing_config(),
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            webhook_tolerance_s=settings.stripe_webhook_tolerance_s,
            timeout_s=settings.provider_timeout_s,
            default_plan=settings.default_checkout_plan,
        )
    return _gateway
