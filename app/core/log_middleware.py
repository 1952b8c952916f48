"""
Request context middleware.

Every request gets a request_id and a correlation_id (taken from the
inbound X-Request-ID / X-Correlation-ID headers when the caller or Stripe
sends them). Both are bound into contextvars so structlog stamps them on
every record, and echoed back as response headers.

One ``request_completed`` record is written per request, carrying the
billing account once auth has resolved it. Health checks log at DEBUG.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.structured_logging import (
    account_id_var,
    correlation_id_var,
    request_id_var,
)

logger = logging.getLogger(__name__)

QUIET_PATHS = frozenset({"/api/health", "/"})


def _account_of(request: Request):
    account = getattr(request.state, "account", None)
    return getattr(account, "account_id", None)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Bind request_id / correlation_id for the lifetime of a request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = request.headers.get("x-correlation-id") or req_id

        tokens = (
            request_id_var.set(req_id),
            correlation_id_var.set(corr_id),
            account_id_var.set(None),
        )

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            log = logger.debug if request.url.path in QUIET_PATHS else logger.info
            log(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path_template": request.url.path,
                    "http.status_code": response.status_code if response else 500,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                    "account_id": _account_of(request),
                },
            )
            for var, token in zip((request_id_var, correlation_id_var, account_id_var), tokens):
                var.reset(token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response
