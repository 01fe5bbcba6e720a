"""Redaction applied to audit evidence, stored errors, and caller-visible details."""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"
DETAILS_MAX_LENGTH = 200

_SENSITIVE_KEY_PATTERNS = (
    "token",
    "secret",
    "password",
    "authorization",
    "api_key",
    "apikey",
    "private_key",
    "cookie",
    "credential",
)
_TOKEN_RE = re.compile(r"\b(?:ghp_|github_pat_|gho_|ghu_|ghs_|ghr_)[A-Za-z0-9_]+")
_BEARER_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-_.=]+")
_BASIC_RE = re.compile(r"(?i)\bbasic\s+[A-Za-z0-9+/=]{8,}")


def is_sensitive_key(key: str) -> bool:
    normalized = str(key).strip().lower().replace("-", "_")
    return any(pattern in normalized for pattern in _SENSITIVE_KEY_PATTERNS)


def redact_text(text: str) -> str:
    value = _TOKEN_RE.sub(REDACTED, text)
    value = _BEARER_RE.sub(f"Bearer {REDACTED}", value)
    return _BASIC_RE.sub(f"Basic {REDACTED}", value)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with secrets replaced by a literal marker.

    Keys matching the deny-list have their whole value replaced. Strings anywhere
    in the payload are scrubbed for GitHub token prefixes and auth headers.
    """

    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, child in value.items():
            if is_sensitive_key(key) and child not in (None, "", False):
                redacted[str(key)] = REDACTED
            else:
                redacted[str(key)] = redact(child)
        return redacted
    if isinstance(value, (list, tuple)):
        return [redact(child) for child in value]
    if isinstance(value, str):
        return redact_text(value)
    return value


def safe_details(message: str | None, max_length: int = DETAILS_MAX_LENGTH) -> str:
    if not message:
        return ""
    trimmed = redact_text(str(message)).strip()
    return trimmed[:max_length]
