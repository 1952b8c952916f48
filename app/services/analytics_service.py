"""
Analytics Recorder
==================

Append-only ``analytics_events`` rows: billing lifecycle events written by
the reconciler and client events posted to ``/api/track``.

``record()`` is best-effort. A failed analytics write is logged and
swallowed so it can never fail a webhook or a usage report.
``record_strict()`` raises, for callers whose whole job is the write.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError

from app.core.database import get_session_context, session_scope
from app.models.billing import AnalyticsEvent

logger = logging.getLogger(__name__)

MAX_EVENT_NAME_LENGTH = 128
MAX_META_BYTES = 8192

_table = AnalyticsEvent.__table__


def _serialize_meta(meta: Optional[Dict[str, Any]]) -> str:
    serialized = json.dumps(meta or {}, default=str, sort_keys=True)
    if len(serialized.encode("utf-8")) > MAX_META_BYTES:
        serialized = json.dumps({"_truncated": True})
    return serialized


class AnalyticsService:

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or get_session_context

    def record_strict(
        self,
        account_id: str,
        event_name: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Insert one event row. Raises ValueError on bad input, SQLAlchemyError on store failure."""
        if not account_id:
            raise ValueError("account_id is required")
        event_name = (event_name or "").strip()
        if not event_name:
            raise ValueError("event_name is required")
        if len(event_name) > MAX_EVENT_NAME_LENGTH:
            raise ValueError(f"event_name longer than {MAX_EVENT_NAME_LENGTH} characters")

        with session_scope(None, self._session_factory) as session:
            session.connection().execute(
                insert(_table).values(
                    account_id=account_id,
                    event_name=event_name,
                    meta=_serialize_meta(meta),
                    created_at=datetime.now(timezone.utc),
                )
            )

    def record(
        self,
        account_id: Optional[str],
        event_name: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Best-effort insert. Returns False (and logs) instead of raising."""
        if not account_id:
            return False
        try:
            self.record_strict(account_id, event_name, meta)
            return True
        except (SQLAlchemyError, ValueError) as exc:
            logger.warning("Analytics insert failed: event=%s account=%s error=%s", event_name, account_id, exc)
            return False


# Singleton instance
_analytics_service: Optional[AnalyticsService] = None


def get_analytics_service() -> AnalyticsService:
    """Get the singleton analytics recorder."""
    global _analytics_service
    if _analytics_service is None:
        _analytics_service = AnalyticsService()
    return _analytics_service
