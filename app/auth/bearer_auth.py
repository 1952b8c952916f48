"""
Bearer Token Authentication
===========================

Thin pass-through to the identity provider: the ``Authorization: Bearer``
token is validated by calling ``{auth_url}/auth/v1/user`` and the returned
user id becomes the account id for the ledger.

Validated tokens are cached for ``auth_cache_ttl`` seconds.

Development: with TALKTIME_AUTH_ENABLED=false the account id is taken from
the ``X-Account-Id`` header and no provider call is made.
"""

import hashlib
import logging
from typing import Optional

import httpx
from cachetools import TTLCache
from fastapi import Request
from pydantic import BaseModel

from app.config import settings
from app.core.errors import TalkTimeError
from app.core.structured_logging import account_id_var

logger = logging.getLogger(__name__)


class AuthenticatedAccount(BaseModel):
    """The caller, as far as billing is concerned."""

    account_id: str
    email: Optional[str] = None


# Validated tokens, keyed by token digest
token_cache = TTLCache(maxsize=1000, ttl=settings.auth_cache_ttl)

_http_client: Optional[httpx.AsyncClient] = None


def _get_http_client() -> httpx.AsyncClient:
    """Return shared httpx.AsyncClient, creating on first use."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.provider_timeout_s, connect=5.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
    return _http_client


def _cache_key(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    token = header[7:].strip()
    return token or None


async def _validate_token(token: str) -> Optional[AuthenticatedAccount]:
    """Ask the identity provider who this token belongs to."""
    if not settings.auth_url:
        raise TalkTimeError("TT-CFG-002", detail="TALKTIME_AUTH_URL is not configured")

    headers = {"Authorization": f"Bearer {token}"}
    if settings.auth_api_key:
        headers["apikey"] = settings.auth_api_key

    url = f"{settings.auth_url.rstrip('/')}/auth/v1/user"
    try:
        response = await _get_http_client().get(url, headers=headers)
    except httpx.RequestError as exc:
        logger.error("Identity provider request failed: %s", exc)
        raise TalkTimeError("TT-SEC-004", detail=f"identity provider unreachable: {exc}")

    if response.status_code in (401, 403):
        logger.warning("Invalid bearer token received: %s...", token[:7])
        return None
    if response.status_code != 200:
        logger.error(
            "Identity provider returned status %d: %s",
            response.status_code,
            response.text[:200],
        )
        raise TalkTimeError("TT-SEC-004", detail=f"identity provider returned {response.status_code}")

    data = response.json()
    user_id = data.get("id") if isinstance(data, dict) else None
    if not user_id:
        return None
    return AuthenticatedAccount(account_id=str(user_id), email=data.get("email"))


async def get_current_account(request: Request) -> AuthenticatedAccount:
    """FastAPI dependency resolving the calling account."""
    if not settings.auth_enabled:
        account_id = (request.headers.get("X-Account-Id") or "").strip()
        if not account_id:
            raise TalkTimeError("TT-SEC-001", detail="auth disabled and X-Account-Id header missing")
        account = AuthenticatedAccount(account_id=account_id, email=request.headers.get("X-Account-Email"))
        account_id_var.set(account.account_id)
        request.state.account = account
        return account

    token = _bearer_token(request)
    if not token:
        raise TalkTimeError("TT-SEC-001", detail="Authorization Bearer token missing")

    key = _cache_key(token)
    account = token_cache.get(key)
    if account is None:
        account = await _validate_token(token)
        if account is None:
            raise TalkTimeError("TT-SEC-002", detail="identity provider rejected token")
        token_cache[key] = account

    account_id_var.set(account.account_id)
    request.state.account = account
    return account


async def close_http_client():
    """Gracefully close the shared httpx client at shutdown."""
    global _http_client
    if _http_client and not _http_client.is_closed:
        await _http_client.aclose()
        _http_client = None
