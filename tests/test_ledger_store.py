"""
Tests for LedgerStore — lazy creation, compare-and-set, top-up and paid reset.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.database import get_session_context
from app.services.ledger_store import LedgerStore


@pytest.fixture
def store():
    return LedgerStore(free_seconds_default=120)


class TestCreation:
    def test_get_missing_returns_none(self, store, account_id):
        assert store.get(account_id) is None

    def test_get_or_create_uses_defaults(self, store, account_id):
        ledger = store.get_or_create(account_id)
        assert ledger.free_total == 120
        assert ledger.free_used == 0
        assert ledger.paid_total == 0
        assert ledger.topup_balance == 0
        assert ledger.remaining == 120

    def test_get_or_create_is_idempotent(self, store, account_id):
        first = store.get_or_create(account_id)
        store.upsert(account_id, {"free_used": 30})
        second = store.get_or_create(account_id)
        assert second.free_used == 30
        assert second.version > first.version

    def test_default_ledger_is_not_persisted(self, store, account_id):
        ledger = store.default_ledger(account_id)
        assert ledger.remaining == 120
        assert store.get(account_id) is None


class TestUpsert:
    def test_upsert_creates_with_fields(self, store, account_id):
        ledger = store.upsert(account_id, {"topup_balance": 500})
        assert ledger.topup_balance == 500
        assert ledger.free_total == 120

    def test_upsert_merges_fields(self, store, account_id):
        store.upsert(account_id, {"topup_balance": 500})
        ledger = store.upsert(account_id, {"paid_total": 60})
        assert ledger.topup_balance == 500
        assert ledger.paid_total == 60

    def test_unknown_field_rejected(self, store, account_id):
        with pytest.raises(ValueError):
            store.upsert(account_id, {"notes": "x"})

    def test_negative_value_rejected(self, store, account_id):
        with pytest.raises(ValueError):
            store.upsert(account_id, {"topup_balance": -1})

    def test_check_constraint_blocks_overdraw(self, store, account_id):
        store.get_or_create(account_id)
        with pytest.raises(IntegrityError):
            store.upsert(account_id, {"free_used": 121})
        assert store.get(account_id).free_used == 0


class TestCompareAndSet:
    def test_applies_on_matching_version(self, store, account_id):
        ledger = store.get_or_create(account_id)
        assert store.compare_and_set(account_id, ledger.version, {"free_used": 10}) is True
        after = store.get(account_id)
        assert after.free_used == 10
        assert after.version == ledger.version + 1

    def test_misses_on_stale_version(self, store, account_id):
        ledger = store.get_or_create(account_id)
        store.increment_topup(account_id, 60)
        assert store.compare_and_set(account_id, ledger.version, {"free_used": 10}) is False
        assert store.get(account_id).free_used == 0

    def test_shares_caller_transaction(self, store, account_id):
        ledger = store.get_or_create(account_id)
        with get_session_context() as session:
            store.compare_and_set(account_id, ledger.version, {"free_used": 5}, session=session)
            session.rollback()
        assert store.get(account_id).free_used == 0


class TestTopupAndReset:
    def test_increment_topup_creates_row(self, store, account_id):
        ledger = store.increment_topup(account_id, 3600)
        assert ledger.topup_balance == 3600
        assert ledger.free_total == 120

    def test_increment_topup_accumulates(self, store, account_id):
        store.increment_topup(account_id, 3600)
        ledger = store.increment_topup(account_id, 8400)
        assert ledger.topup_balance == 12000

    def test_increment_rejects_non_positive(self, store, account_id):
        with pytest.raises(ValueError):
            store.increment_topup(account_id, 0)

    def test_reset_paid_allotment(self, store, account_id):
        store.upsert(account_id, {"paid_total": 7200, "paid_used": 7000, "topup_balance": 50})
        ledger = store.reset_paid_allotment(account_id, 18000)
        assert ledger.paid_total == 18000
        assert ledger.paid_used == 0
        assert ledger.topup_balance == 50
