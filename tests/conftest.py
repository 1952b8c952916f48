"""
Pytest configuration for TalkTime billing tests.
Points the app at a throwaway SQLite database and disables bearer auth.
"""

import os
import tempfile

# Must be set before any app imports
_test_data_dir = tempfile.mkdtemp(prefix="talktime_test_")
os.environ["TALKTIME_AUTH_ENABLED"] = "false"
os.environ.setdefault("TALKTIME_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("TALKTIME_LOG_DIRECTORY", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("TALKTIME_STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("TALKTIME_STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("TALKTIME_PLAN_PRICE_IDS", '{"starter": "price_starter", "plus": "price_plus"}')
os.environ.setdefault("TALKTIME_TOPUP_PRICE_IDS", '{"5": "price_topup_5", "10": "price_topup_10", "20": "price_topup_20"}')
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")

import uuid

import pytest
from sqlmodel import SQLModel

from app.core.database import get_engine

# Import all models so their tables are registered on SQLModel.metadata
from app.models.billing import (  # noqa: F401
    AnalyticsEvent,
    ProcessedBillingEvent,
    SubscriptionRecord,
    UsageLedger,
)

SQLModel.metadata.create_all(get_engine())

# Load error registry so TalkTimeError returns correct HTTP status codes
from app.core.errors.registry import error_registry
error_registry.load()


@pytest.fixture
def account_id():
    """A fresh account id per test so rows never collide."""
    return f"acct_{uuid.uuid4().hex[:12]}"


@pytest.fixture
def billing_config():
    from app.config import settings
    return settings.billing_config()


@pytest.fixture
def account_headers(account_id):
    """Headers for the X-Account-Id development auth path."""
    return {"X-Account-Id": account_id}
