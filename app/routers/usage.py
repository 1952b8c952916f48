"""
Usage & Session Router
======================

- POST /api/usage    — report conversation seconds, draw them from the ledger
- GET  /api/session  — remaining seconds / premium flag for the paywall

Both return HTTP 402 with the paywall body when a non-premium account has
nothing left (see SecondsExhaustedException handler in main.py).
"""

import logging
import math
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.auth.bearer_auth import AuthenticatedAccount, get_current_account
from app.config import settings
from app.core.async_utils import run_sync
from app.core.errors import TalkTimeError
from app.services.entitlement_service import EntitlementService, get_entitlement_service
from app.services.usage_charger import UsageCharger, get_usage_charger

logger = logging.getLogger(__name__)

router = APIRouter()

# Outer wait past the charge deadline, long enough for an in-flight commit or rollback to finish.
COMMIT_GRACE_S = 2.0


class UsageReport(BaseModel):
    seconds_used: Any = 0


class UsageResponse(BaseModel):
    ok: bool = True
    charged_seconds: int
    buckets: Dict[str, int]
    remaining_seconds: Optional[int] = None
    premium: bool = False
    ignored: bool = False
    usage: Optional[Dict[str, int]] = None


class SessionResponse(BaseModel):
    user_id: str
    remaining_seconds: int
    is_premium: bool
    plan: Optional[str] = None


def _parse_seconds(value: Any) -> float:
    """Numbers and numeric strings pass; anything else is a bad report."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise TalkTimeError("TT-API-001", detail="seconds_used must be a number, got a boolean")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise TalkTimeError("TT-API-001", detail=f"seconds_used is not a number: {value!r}")
    if not math.isfinite(number):
        raise TalkTimeError("TT-API-001", detail=f"seconds_used is not finite: {value!r}")
    return number


@router.post("/usage", response_model=UsageResponse, summary="Report conversation seconds")
async def report_usage(
    body: UsageReport,
    account: AuthenticatedAccount = Depends(get_current_account),
    charger: UsageCharger = Depends(get_usage_charger),
):
    seconds = _parse_seconds(body.seconds_used)
    deadline = time.monotonic() + settings.store_timeout_s
    result = await run_sync(
        charger.charge,
        account.account_id,
        seconds,
        deadline,
        timeout=settings.store_timeout_s + COMMIT_GRACE_S,
        timeout_code="TT-DB-003",
    )
    return UsageResponse(
        charged_seconds=result.charged_seconds,
        buckets=result.buckets.to_dict(),
        remaining_seconds=result.remaining_seconds,
        premium=result.premium,
        ignored=result.ignored,
        usage=result.ledger.to_dict() if result.ledger is not None else None,
    )


@router.get("/session", response_model=SessionResponse, summary="Remaining seconds for the caller")
async def get_session(
    account: AuthenticatedAccount = Depends(get_current_account),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    entitlement = await run_sync(
        entitlements.check,
        account.account_id,
        timeout=settings.store_timeout_s,
        timeout_code="TT-DB-003",
    )
    return SessionResponse(
        user_id=account.account_id,
        remaining_seconds=entitlement.remaining_seconds,
        is_premium=entitlement.is_premium,
        plan=entitlement.plan,
    )
