"""
Structured errors for the billing service.

Every failure a client or Stripe can observe is a ``TalkTimeError`` carrying
a ``TT-<DOMAIN>-<NNN>`` code. The code selects an entry in registry.yaml,
which fixes the HTTP status, the user-safe message and whether a retry can
help. ``detail`` and ``context`` go to the logs only.

Domains:
    API  malformed client input
    SEC  authentication and webhook signature failures
    CFG  missing or unusable configuration (plans, packs, secrets)
    DB   ledger and event-store failures, including write conflicts
    BIL  billing events that cannot be applied yet
    PRV  the payment provider (Stripe) failing or timing out
    SYS  anything else

Usage:
    from app.core.errors import TalkTimeError
    raise TalkTimeError("TT-BIL-001", detail="no plan for sub_123", context={"event_id": evt.id})
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

DOMAINS = ("API", "SEC", "CFG", "DB", "BIL", "PRV", "SYS")

CODE_PATTERN = re.compile(r"^TT-(%s)-\d{3}$" % "|".join(DOMAINS))


class TalkTimeError(Exception):
    """A registry-coded failure.

    Args:
        code: Registry error code, e.g. "TT-DB-003".
        detail: Internal message for the logs, never sent to the client.
        context: Ids and amounts that explain the failure (account, event, pack).
    """

    def __init__(
        self,
        code: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        match = CODE_PATTERN.match(code or "")
        if match is None:
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.domain = match.group(1)
        self.detail = detail
        self.context = dict(context or {})
        super().__init__(f"{code}: {detail}" if detail else code)
