"""
Error registry — loads and validates registry.yaml.

Each entry fixes the HTTP status, the user-safe message and whether the
caller may retry. Retryable entries must map to a 5xx status: Stripe only
redelivers a webhook on a 5xx, and the client only retries on one.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List

import yaml

from app.core.errors import CODE_PATTERN, DOMAINS

logger = logging.getLogger(__name__)

VALID_DOMAINS = frozenset(DOMAINS)
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = {
    "code",
    "domain",
    "title",
    "severity",
    "retryable",
    "user_action_required",
    "http_status",
    "safe_message",
    "remediation",
}


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


def _parse_entry(idx: int, raw: dict) -> ErrorEntry:
    missing = REQUIRED_FIELDS - set(raw)
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {sorted(missing)}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")

    domain = raw["domain"]
    if domain != code.split("-")[1]:
        raise RegistryValidationError(f"{code}: domain {domain!r} doesn't match code prefix")
    if domain not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {domain!r}")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    http_status = int(raw["http_status"])
    if not 400 <= http_status <= 599:
        raise RegistryValidationError(f"{code}: http_status {http_status} is not an error status")
    retryable = bool(raw["retryable"])
    if retryable and http_status < 500:
        raise RegistryValidationError(f"{code}: retryable errors must use a 5xx status")

    return ErrorEntry(
        code=code,
        domain=domain,
        title=raw["title"],
        severity=raw["severity"],
        retryable=retryable,
        user_action_required=bool(raw["user_action_required"]),
        http_status=http_status,
        safe_message=raw["safe_message"],
        remediation=list(raw.get("remediation") or []),
    )


class ErrorRegistry:
    """Loads, validates, and provides lookup for error codes."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: str | None = None) -> None:
        if path is None:
            path = os.path.join(os.path.dirname(__file__), "registry.yaml")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        errors_list = data.get("errors", [])
        if not isinstance(errors_list, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(errors_list):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = data.get("schema_version", 0)
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        """Lookup by code, raising KeyError if not found."""
        entry = self._entries.get(code)
        if entry is None:
            raise KeyError(f"Unknown error code: {code!r}")
        return entry

    def codes_for_domain(self, domain: str) -> list[str]:
        return [c for c, e in self._entries.items() if e.domain == domain]

    def __len__(self) -> int:
        return len(self._entries)


# Module-level singleton, loaded once at startup
error_registry = ErrorRegistry()
