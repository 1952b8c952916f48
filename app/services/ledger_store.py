"""
Ledger Store — Per-Account Seconds Buckets
===========================================

PURPOSE:
    Durable record of {free_total, free_used, paid_total, paid_used,
    topup_balance} per account in the ``user_usage`` table. No billing
    policy lives here; callers decide what to write.

ATOMICITY:
    - Rows are created with INSERT ... ON CONFLICT DO NOTHING, so two
      requests racing to create the same ledger both end up reading the
      single surviving row.
    - ``compare_and_set()`` writes only if ``version`` still matches the
      value the caller read. The usage charger retries on a miss.
    - ``increment_topup()`` and ``reset_paid_allotment()`` are single
      UPDATE expressions that bump ``version``, which forces any in-flight
      compare-and-set on the same row to re-read.
    - Reads taken for a write use SELECT ... FOR UPDATE on PostgreSQL.

Every method takes an optional ``session``. Passing one enlists the write
in the caller's transaction (the caller commits); omitting it runs the
method in its own committed transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select, update
from sqlmodel import Session

from app.core.database import (
    get_session_context,
    insert_if_absent,
    session_scope,
    supports_row_locks,
)
from app.models.billing import UsageLedger
from app.models.ledger import Ledger

logger = logging.getLogger(__name__)

__all__ = ["LedgerStore", "LEDGER_FIELDS"]

LEDGER_FIELDS = frozenset({"free_total", "free_used", "paid_total", "paid_used", "topup_balance"})

_table = UsageLedger.__table__


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_fields(fields: Mapping[str, Any]) -> Dict[str, int]:
    unknown = set(fields) - LEDGER_FIELDS
    if unknown:
        raise ValueError(f"Unknown ledger fields: {sorted(unknown)}")
    clean: Dict[str, int] = {}
    for name, value in fields.items():
        value = int(value)
        if value < 0:
            raise ValueError(f"Ledger field {name} must be >= 0, got {value}")
        clean[name] = value
    return clean


class LedgerStore:
    """Atomic read / compare-and-write access to ``user_usage``."""

    def __init__(self, free_seconds_default: int = 120, session_factory=None):
        self._free_default = max(0, int(free_seconds_default))
        self._session_factory = session_factory or get_session_context

    @property
    def free_seconds_default(self) -> int:
        return self._free_default

    def default_ledger(self, account_id: str) -> Ledger:
        """The ledger a brand-new account would get (not persisted)."""
        return Ledger(account_id=account_id, free_total=self._free_default)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, account_id: str, session: Optional[Session] = None) -> Optional[Ledger]:
        with session_scope(session, self._session_factory) as s:
            return self._read(s.connection(), account_id)

    def get_or_create(self, account_id: str, session: Optional[Session] = None) -> Ledger:
        with session_scope(session, self._session_factory) as s:
            conn = s.connection()
            self._ensure_row(conn, account_id)
            return self._read(conn, account_id)

    def load_for_update(self, account_id: str, session: Session) -> Ledger:
        """Create-if-absent, then read the row under a row lock where supported."""
        conn = session.connection()
        self._ensure_row(conn, account_id)
        return self._read(conn, account_id, for_update=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        session: Optional[Session] = None,
    ) -> Ledger:
        """Create the ledger if absent, then merge *fields* into it."""
        values = _check_fields(fields)
        with session_scope(session, self._session_factory) as s:
            conn = s.connection()
            created = self._ensure_row(conn, account_id, initial=values)
            if values and not created:
                conn.execute(
                    update(_table)
                    .where(_table.c.account_id == account_id)
                    .values(**values, version=_table.c.version + 1, updated_at=_utcnow())
                )
            return self._read(conn, account_id)

    def compare_and_set(
        self,
        account_id: str,
        expected_version: int,
        fields: Mapping[str, Any],
        session: Optional[Session] = None,
    ) -> bool:
        """Write *fields* only if the row is still at *expected_version*."""
        values = _check_fields(fields)
        with session_scope(session, self._session_factory) as s:
            result = s.connection().execute(
                update(_table)
                .where(_table.c.account_id == account_id)
                .where(_table.c.version == expected_version)
                .values(**values, version=expected_version + 1, updated_at=_utcnow())
            )
            applied = result.rowcount == 1
        if not applied:
            logger.info(
                "Ledger compare-and-set missed: account=%s expected_version=%d",
                account_id,
                expected_version,
            )
        return applied

    def increment_topup(
        self,
        account_id: str,
        seconds: int,
        session: Optional[Session] = None,
    ) -> Ledger:
        """``topup_balance += seconds`` as one UPDATE expression."""
        seconds = int(seconds)
        if seconds <= 0:
            raise ValueError(f"Top-up increment must be positive, got {seconds}")
        with session_scope(session, self._session_factory) as s:
            conn = s.connection()
            self._ensure_row(conn, account_id)
            conn.execute(
                update(_table)
                .where(_table.c.account_id == account_id)
                .values(
                    topup_balance=_table.c.topup_balance + seconds,
                    version=_table.c.version + 1,
                    updated_at=_utcnow(),
                )
            )
            return self._read(conn, account_id)

    def reset_paid_allotment(
        self,
        account_id: str,
        paid_total: int,
        session: Optional[Session] = None,
    ) -> Ledger:
        """Start a fresh billing period: ``paid_total = n, paid_used = 0``."""
        paid_total = int(paid_total)
        if paid_total < 0:
            raise ValueError(f"paid_total must be >= 0, got {paid_total}")
        with session_scope(session, self._session_factory) as s:
            conn = s.connection()
            self._ensure_row(conn, account_id)
            conn.execute(
                update(_table)
                .where(_table.c.account_id == account_id)
                .values(
                    paid_total=paid_total,
                    paid_used=0,
                    version=_table.c.version + 1,
                    updated_at=_utcnow(),
                )
            )
            return self._read(conn, account_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_row(self, conn, account_id: str, initial: Optional[Mapping[str, int]] = None) -> bool:
        now = _utcnow()
        values = {
            "account_id": account_id,
            "free_total": self._free_default,
            "free_used": 0,
            "paid_total": 0,
            "paid_used": 0,
            "topup_balance": 0,
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }
        if initial:
            values.update(initial)
        created = insert_if_absent(conn, _table, values, key="account_id")
        if created:
            logger.info("Ledger created: account=%s free_total=%d", account_id, values["free_total"])
        return created

    def _read(self, conn, account_id: str, for_update: bool = False) -> Optional[Ledger]:
        stmt = select(_table).where(_table.c.account_id == account_id)
        if for_update and supports_row_locks():
            stmt = stmt.with_for_update()
        row = conn.execute(stmt).first()
        return Ledger.from_row(row) if row is not None else None
