"""Sensitive header redaction."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

MASK_TOKEN = "[redacted]"
SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "x-api-key"})


def is_sensitive_header(name: str) -> bool:
    """Return True when the header name is in the sensitive set (any casing)."""
    return name.lower() in SENSITIVE_HEADERS


def _already_masked(value: Any) -> bool:
    return isinstance(value, str) and MASK_TOKEN in value


def redact_headers(headers: Any) -> dict[str, Any]:
    """Mask sensitive header values.

    Keys keep their original casing and order. A value that already carries
    the mask token is kept as-is so that redacting twice is a no-op.
    Anything that is not a mapping yields an empty dict.
    """
    if not isinstance(headers, Mapping):
        return {}

    redacted: dict[str, Any] = {}
    for key, value in headers.items():
        name = str(key)
        if is_sensitive_header(name) and not _already_masked(value):
            redacted[name] = MASK_TOKEN
        else:
            redacted[name] = value
    return redacted
