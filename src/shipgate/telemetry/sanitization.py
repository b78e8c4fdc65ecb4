"""Redact credentials from messages before they reach spans or reports."""

from __future__ import annotations

import re

_SENSITIVE_KEY_PATTERN = re.compile(
    r"(password|secret|token|api_key|apikey|authorization|credential)"
    r"\s*[=:]\s*\S+",
    re.IGNORECASE,
)
_URL_CREDENTIAL_PATTERN = re.compile(r"://[^@/\s]+:[^@/\s]+@")


def sanitize_error_message(msg: str, max_length: int = 500) -> str:
    """Redact URL credentials and sensitive key/value pairs, then truncate.

    Scanner stderr and HTTP errors routinely echo tokens passed on the
    command line or in URLs; everything recorded on a span or returned in
    a ScanResult goes through here.

    Example:
        >>> sanitize_error_message("push failed: token=abc123 for https://u:p@reg")
        'push failed: token=<REDACTED> for https://<REDACTED>@reg'
    """
    sanitized = _URL_CREDENTIAL_PATTERN.sub("://<REDACTED>@", msg)

    def _redact(match: re.Match[str]) -> str:
        text = match.group(0)
        if "=" in text:
            return text.split("=", 1)[0] + "=<REDACTED>"
        return text.split(":", 1)[0] + ": <REDACTED>"

    sanitized = _SENSITIVE_KEY_PATTERN.sub(_redact, sanitized)
    return sanitized[:max_length]


__all__ = ["sanitize_error_message"]
