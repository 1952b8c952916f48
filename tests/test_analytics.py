"""
Tests for AnalyticsService.
"""

import json
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.database import get_session_context
from app.models.billing import AnalyticsEvent
from app.services.analytics_service import AnalyticsService


def _rows(account_id):
    table = AnalyticsEvent.__table__
    with get_session_context() as session:
        return session.connection().execute(
            select(table.c.event_name, table.c.meta).where(table.c.account_id == account_id)
        ).all()


@pytest.fixture
def service():
    return AnalyticsService()


def test_record_strict_inserts_row(service, account_id):
    service.record_strict(account_id, " paywall_shown ", {"screen": "chat"})
    rows = _rows(account_id)
    assert len(rows) == 1
    assert rows[0].event_name == "paywall_shown"
    assert json.loads(rows[0].meta) == {"screen": "chat"}


def test_oversized_meta_truncated(service, account_id):
    service.record_strict(account_id, "big", {"blob": "x" * 10_000})
    assert json.loads(_rows(account_id)[0].meta) == {"_truncated": True}


@pytest.mark.parametrize("name", ["", "   ", "x" * 129])
def test_record_strict_rejects_bad_name(service, account_id, name):
    with pytest.raises(ValueError):
        service.record_strict(account_id, name)


def test_record_without_account_is_noop(service):
    assert service.record(None, "anything") is False


def test_record_swallows_store_errors(account_id):
    factory = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")))
    service = AnalyticsService(session_factory=factory)
    assert service.record(account_id, "topup_completed", {"pack": "5"}) is False


def test_record_returns_true_on_success(service, account_id):
    assert service.record(account_id, "checkout_unknown_mode", {"mode": "setup"}) is True
    assert len(_rows(account_id)) == 1
