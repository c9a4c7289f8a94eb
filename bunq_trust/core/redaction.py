"""
Redaction for log events.

Key-based redaction for values stored under secret-looking keys and
value-based redaction for PEM blocks and long hex tokens, so API keys,
installation/session tokens and private keys never reach log output.
"""
from __future__ import annotations

import re
from typing import Any

# ── Key-based redaction (case-insensitive substring match) ───────────
_SENSITIVE_KEY_SUBSTRINGS = frozenset({
    "secret", "token", "apikey", "api_key", "authorization",
    "private", "signature", "fingerprint", "credential",
})

# ── Value-based patterns ────────────────────────────────────────────
_PEM_PATTERN = re.compile(
    r"-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----", re.DOTALL
)
# bunq tokens and API keys are 64 hex chars
_HEX_TOKEN_PATTERN = re.compile(r"\b[0-9a-fA-F]{64}\b")


def _is_sensitive_key(key: str) -> bool:
    lower = key.lower()
    return any(s in lower for s in _SENSITIVE_KEY_SUBSTRINGS)


def _redact_sensitive_value(value: str) -> str:
    """Partially redact a sensitive value: first 4 + **** + last 4 chars."""
    if len(value) <= 16:
        return "[REDACTED]"
    return value[:4] + "****" + value[-4:]


def redact_value(key: str, value: Any) -> Any:
    """Redact a single value based on its key name."""
    if not isinstance(value, str):
        return value
    if _is_sensitive_key(key):
        return _redact_sensitive_value(value)
    return _redact_string_values(value)


def redact_log_entry(entry: dict) -> dict:
    """Apply key-based and value-based redaction to a log entry, recursively."""
    result = {}
    for k, v in entry.items():
        if isinstance(v, dict):
            result[k] = redact_log_entry(v)
        elif isinstance(v, list):
            result[k] = [
                redact_log_entry(item) if isinstance(item, dict)
                else redact_value(k, item)
                for item in v
            ]
        else:
            result[k] = redact_value(k, v)
    return result


def _redact_string_values(value: str) -> str:
    value = _PEM_PATTERN.sub("[REDACTED_PEM]", value)
    value = _HEX_TOKEN_PATTERN.sub("[REDACTED_TOKEN]", value)
    return value


def structlog_redaction_processor(logger, method_name, event_dict):
    """Structlog processor that scrubs secrets before rendering."""
    return redact_log_entry(event_dict)
