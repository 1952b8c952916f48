"""
POST /api/track — client analytics events ({event_name, meta}).
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.auth.bearer_auth import AuthenticatedAccount, get_current_account
from app.config import settings
from app.core.async_utils import run_sync
from app.core.errors import TalkTimeError
from app.services.analytics_service import AnalyticsService, get_analytics_service

logger = logging.getLogger(__name__)

router = APIRouter()


class TrackRequest(BaseModel):
    event_name: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


@router.post("/track", summary="Record a client analytics event")
async def track_event(
    body: TrackRequest,
    account: AuthenticatedAccount = Depends(get_current_account),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    if not (body.event_name or "").strip():
        raise TalkTimeError("TT-API-002", detail="event_name missing")
    try:
        await run_sync(
            analytics.record_strict,
            account.account_id,
            body.event_name,
            body.meta or {},
            timeout=settings.store_timeout_s,
            timeout_code="TT-DB-003",
        )
    except ValueError as exc:
        raise TalkTimeError("TT-API-002", detail=str(exc))
    return {"ok": True}
