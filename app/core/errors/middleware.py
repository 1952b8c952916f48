"""
JSON rendering for TalkTimeError.

The client sees the registry entry (code, safe message, retry hints) plus the
request id it can quote to support. Stripe only looks at the status: a 5xx
makes it redeliver the webhook, anything else is final. The internal detail
and context are logged together with the account and request ids.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import TalkTimeError
from app.core.errors.registry import ErrorEntry, error_registry
from app.core.structured_logging import account_id_var, request_id_var

logger = logging.getLogger(__name__)

RETRY_AFTER_S = 5

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Rendered for codes raised without a registry entry
_UNREGISTERED = ErrorEntry(
    code="TT-SYS-000",
    domain="SYS",
    title="Internal error",
    severity="ERROR",
    retryable=False,
    user_action_required=False,
    http_status=500,
    safe_message="An unexpected error occurred.",
)


async def talktime_error_handler(request: Request, exc: TalkTimeError) -> JSONResponse:
    entry = error_registry.get(exc.code)
    registered = entry is not None
    if not registered:
        entry = _UNREGISTERED

    request_id = request_id_var.get(None)
    logger.log(
        _LOG_LEVELS.get(entry.severity, logging.ERROR),
        "%s: %s %s -> %d (%s)",
        exc.code,
        request.method,
        request.url.path,
        entry.http_status,
        exc.detail or entry.title,
        extra={
            "error.code": exc.code,
            "error.domain": exc.domain,
            "error.registered": registered,
            "error.retryable": entry.retryable,
            "http.status": entry.http_status,
            "account_id": account_id_var.get(None),
            "request_id": request_id,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        },
    )

    headers = None
    if entry.retryable and entry.http_status == 503:
        headers = {"Retry-After": str(RETRY_AFTER_S)}
    return JSONResponse(
        status_code=entry.http_status,
        headers=headers,
        content={
            "error": {
                "code": exc.code,
                "title": entry.title,
                "message": entry.safe_message,
                "retryable": entry.retryable,
                "user_action_required": entry.user_action_required,
                "remediation": list(entry.remediation),
                "request_id": request_id,
            }
        },
    )
