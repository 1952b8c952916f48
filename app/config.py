"""
TalkTime Billing Configuration
===============================

PURPOSE:
    Pydantic-Settings based configuration for the TalkTime billing backend.
    All settings can be overridden via environment variables (TALKTIME_ prefix).

    Mapping values (plan → included seconds, top-up pack → added seconds) are
    JSON-encoded when set from the environment, e.g.:

        TALKTIME_PLAN_INCLUDED_SECONDS='{"starter": 7200, "plus": 18000}'

    The ledger services never read ``settings`` directly. They receive a
    frozen ``BillingConfig`` built once via ``settings.billing_config()``.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_DEFAULT_ORIGIN = "https://talktime.app"


@dataclass(frozen=True)
class BillingConfig:
    """Immutable billing mapping injected into charger, entitlement and reconciler."""

    free_seconds_default: int = 120
    max_single_report_seconds: int = 3600
    premium_display_seconds: int = 999_999
    ledger_cas_max_attempts: int = 5
    plan_included_seconds: Mapping[str, int] = field(default_factory=dict)
    topup_pack_seconds: Mapping[str, int] = field(default_factory=dict)
    plan_price_ids: Mapping[str, str] = field(default_factory=dict)
    topup_price_ids: Mapping[str, str] = field(default_factory=dict)

    def included_seconds_for(self, plan: Optional[str]) -> int:
        """Included seconds for a plan id, 0 when unknown."""
        key = normalize_identifier(plan)
        if not key:
            return 0
        return max(0, int(self.plan_included_seconds.get(key, 0)))

    def added_seconds_for(self, pack) -> int:
        """Seconds granted by a top-up pack, 0 when unknown."""
        key = normalize_identifier(pack)
        if not key:
            return 0
        return max(0, int(self.topup_pack_seconds.get(key, 0)))

    def plan_for_price_id(self, price_id: Optional[str]) -> Optional[str]:
        """Reverse lookup of a provider price id to a plan id."""
        if not price_id:
            return None
        for plan, configured in self.plan_price_ids.items():
            if configured and configured == price_id:
                return normalize_identifier(plan)
        return None


def normalize_identifier(value) -> Optional[str]:
    """Lower-case and trim a plan/pack identifier. Empty and "0" mean absent.

    Integral numbers are written in one canonical form, so 5, 5.0, "5.0" and
    " 05" all name pack "5".
    """
    if value is None:
        return None
    text = str(value).strip().lower()
    try:
        number = float(text)
    except ValueError:
        pass
    else:
        if math.isfinite(number) and number == int(number):
            text = str(int(number))
    if not text or text == "0":
        return None
    return text


class Settings(BaseSettings):
    app_name: str = "TalkTime Billing"
    debug: bool = False

    data_directory: str = "/data"
    log_directory: str = "logs"

    # Ledger policy
    free_seconds_default: int = 120
    max_single_report_seconds: int = 3600
    premium_display_seconds: int = 999_999
    ledger_cas_max_attempts: int = 5

    # What grants how many seconds
    plan_included_seconds: Dict[str, int] = {"starter": 120 * 60, "plus": 300 * 60}
    topup_pack_seconds: Dict[str, int] = {"5": 60 * 60, "10": 140 * 60, "20": 320 * 60}

    # Stripe billing
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_s: int = 300
    plan_price_ids: Dict[str, str] = {}
    topup_price_ids: Dict[str, str] = {}
    default_checkout_plan: str = "starter"
    public_origin: str = _DEFAULT_ORIGIN

    # Timeouts (seconds) for blocking work offloaded to threads
    provider_timeout_s: float = 10.0
    store_timeout_s: float = 10.0
    webhook_timeout_s: float = 25.0

    # Identity provider pass-through
    auth_enabled: bool = True
    auth_url: Optional[str] = None
    auth_api_key: Optional[str] = None
    auth_cache_ttl: int = 60

    # CORS
    cors_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        _DEFAULT_ORIGIN,
    ]

    class Config:
        env_file = ".env"
        env_prefix = "TALKTIME_"

    def billing_config(self) -> BillingConfig:
        """Snapshot the billing-relevant settings into an immutable object."""
        return BillingConfig(
            free_seconds_default=self.free_seconds_default,
            max_single_report_seconds=self.max_single_report_seconds,
            premium_display_seconds=self.premium_display_seconds,
            ledger_cas_max_attempts=self.ledger_cas_max_attempts,
            plan_included_seconds={
                normalize_identifier(k): int(v)
                for k, v in self.plan_included_seconds.items()
                if normalize_identifier(k)
            },
            topup_pack_seconds={
                normalize_identifier(k): int(v)
                for k, v in self.topup_pack_seconds.items()
                if normalize_identifier(k)
            },
            plan_price_ids=dict(self.plan_price_ids),
            topup_price_ids={
                normalize_identifier(k): v
                for k, v in self.topup_price_ids.items()
                if normalize_identifier(k)
            },
        )


settings = Settings()

if not settings.stripe_webhook_secret:
    logger.warning(
        "TALKTIME_STRIPE_WEBHOOK_SECRET not set — billing webhooks will be rejected."
    )
