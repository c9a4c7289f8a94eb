"""
Error taxonomy for the bunq trust/session client.

BunqTrustError is the base exception for all structured errors. Every
subclass carries a registry-style code (BQT-<DOMAIN>-<NNN>) for structured
logging, while str(error) stays the plain message so a UI can show it
verbatim.

Usage:
    from bunq_trust.core.errors import ProtocolError
    raise ProtocolError("No device ID received")
"""

from __future__ import annotations

import re
from typing import Any, List, Optional

CODE_PATTERN = re.compile(r"^BQT-[A-Z]{2,6}-\d{3}$")

# 401 = session expired/invalid
AUTHENTICATION_STATUS = 401
# 403 = credentials mismatch, 466 = request signature required (installation invalidated)
FULL_SETUP_STATUSES = frozenset({401, 403, 466})


class BunqTrustError(Exception):
    """Structured error with a stable code.

    Args:
        message: Human-readable message, surfaced to users unchanged.
        code: Registry error code, e.g. "BQT-PRO-001".
        context: Arbitrary key-value context for structured logging.
    """

    code = "BQT-SYS-001"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.message = message
        self.context = context or {}
        super().__init__(message)


class ConfigurationError(BunqTrustError):
    """Required configuration (the API key) is missing."""

    code = "BQT-CFG-001"


class ProtocolError(BunqTrustError):
    """A well-formed response lacked a field the handshake needs."""

    code = "BQT-PRO-001"


class SecurityError(BunqTrustError):
    """Response signature missing or invalid. Never retried."""

    code = "BQT-SEC-001"


class TransportError(BunqTrustError):
    """Network failure or an unparseable response body."""

    code = "BQT-NET-001"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ApiError(BunqTrustError):
    """Non-2xx status or an `Error` envelope from the bunq API.

    `errors` is the raw `Error` array as decoded from the response body;
    the message is the first entry's description.
    """

    code = "BQT-API-001"

    def __init__(self, message: str, status_code: int, errors: Optional[List[Any]] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.errors = list(errors or [])

    @property
    def is_authentication_error(self) -> bool:
        return self.status_code == AUTHENTICATION_STATUS


def get_error_message(error: object) -> str:
    if isinstance(error, Exception):
        return str(error) or type(error).__name__
    return "Unknown error"


def is_api_error(error: object) -> bool:
    return isinstance(error, ApiError)


def is_authentication_error(error: object) -> bool:
    """True only for an ApiError with status 401."""
    return isinstance(error, ApiError) and error.is_authentication_error


def needs_full_setup(error: object) -> bool:
    """True when a failed refresh means the installation itself is no longer usable."""
    return isinstance(error, ApiError) and error.status_code in FULL_SETUP_STATUSES
