"""Credential scrubbing for anything that ends up in traces or logs."""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"
TRUNCATION_MARKER = "…[truncated]"

_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bsk-ant-[A-Za-z0-9_\-]{20,}"), REDACTED),
    (re.compile(r"\bsk-[A-Za-z0-9][A-Za-z0-9_\-]{19,}"), REDACTED),
    (re.compile(r"\bgsk_[A-Za-z0-9]{20,}"), REDACTED),
    (re.compile(r"(?i)(authorization\s*:\s*bearer\s+)[^\s\"']+"), rf"\g<1>{REDACTED}"),
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._\-]{10,}"), rf"\g<1>{REDACTED}"),
    (
        re.compile(r"(?i)(\"(?:api_?key|authorization)\"\s*:\s*\")[^\"]*(\")"),
        rf"\g<1>{REDACTED}\g<2>",
    ),
    (re.compile(r"(?i)(x-api-key\s*:\s*)[^\s,;\"']+"), rf"\g<1>{REDACTED}"),
    (re.compile(r"(?i)(api_?key\s*[:=]\s*)[^\s,;\"'&]+"), rf"\g<1>{REDACTED}"),
]


def redact_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _PATTERNS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def redact_deep(value: Any) -> Any:
    """Return a copy of ``value`` with every nested string redacted."""
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {key: redact_deep(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_deep(item) for item in value]
    return value


def truncate_with_marker(value: str, limit: int) -> str:
    """Shorten ``value`` to at most ``limit`` characters, marker included."""
    if len(value) <= limit:
        return value
    if limit <= len(TRUNCATION_MARKER):
        return TRUNCATION_MARKER[:max(limit, 0)]
    return value[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def preview(value: str, limit: int) -> str:
    return truncate_with_marker(redact_text(value), limit)
