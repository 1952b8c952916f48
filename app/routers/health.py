"""
Health check endpoints.

- GET /api/health       — cheap: process alive, version, uptime
- GET /api/health/deep  — bounded checks for database, disk and Stripe config
"""
import asyncio
import logging
import time
from datetime import datetime, timezone

import psutil
from fastapi import APIRouter, Depends

from app.auth.bearer_auth import AuthenticatedAccount, get_current_account
from app.config import settings
from app.core.database import ping_database
from app.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s
from app.services.stripe_gateway import get_stripe_gateway

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENT_TIMEOUT = 2.0  # seconds


@router.get("/health")
async def health_check():
    """Cheap health check — no I/O."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(_account: AuthenticatedAccount = Depends(get_current_account)):
    """Deep health check with bounded component checks."""
    checks = [
        ("database", _check_database()),
        ("disk", _check_disk()),
        ("stripe", _check_stripe()),
    ]
    results = await asyncio.gather(*[_bounded_check(name, coro) for name, coro in checks])
    components = dict(results)

    statuses = [c.get("status", "down") for c in components.values()]
    if "down" in statuses:
        overall = "down"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "ok"

    return {
        "status": overall,
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "components": components,
    }


async def _bounded_check(name: str, coro) -> tuple:
    try:
        return name, await asyncio.wait_for(coro, timeout=COMPONENT_TIMEOUT)
    except asyncio.TimeoutError:
        return name, {"status": "down", "detail_safe": "Health check timed out"}
    except Exception as e:
        logger.warning("health_check_error", extra={"component": name, "error": str(e)})
        return name, {"status": "down", "detail_safe": f"Check failed: {type(e).__name__}"}


async def _check_database() -> dict:
    """SELECT 1 against the ledger database."""
    start = time.perf_counter()
    await asyncio.to_thread(ping_database)
    latency_ms = round((time.perf_counter() - start) * 1000, 1)
    return {"status": "degraded" if latency_ms > 250 else "ok", "latency_ms": latency_ms}


async def _check_disk() -> dict:
    """Free space on the data volume (SQLite lives there)."""
    path = settings.data_directory
    try:
        usage = psutil.disk_usage(path)
    except FileNotFoundError:
        usage = psutil.disk_usage("/")
    free_pct = round(100.0 - usage.percent, 1)
    if free_pct < 5:
        status = "down"
    elif free_pct < 15:
        status = "degraded"
    else:
        status = "ok"
    return {"status": status, "detail_safe": f"{free_pct}% free"}


async def _check_stripe() -> dict:
    """Configuration only; no network call."""
    gateway = get_stripe_gateway()
    if not gateway.configured:
        return {"status": "degraded", "detail_safe": "Stripe secret key not configured"}
    if not gateway.webhook_configured:
        return {"status": "degraded", "detail_safe": "Stripe webhook secret not configured"}
    return {"status": "ok"}
