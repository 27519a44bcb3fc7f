#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class PollerError(Exception):
    """Base class for every error raised by the poller."""


class ConfigError(PollerError):
    """Raised when construction input (identity, location, poll settings) is invalid."""


class AuthError(PollerError):
    """Raised when a session could not be obtained for an identity.

    Attributes:
        status: HTTP status of the failed request, if one was received.
    """

    def __init__(self, message: str = "Session request failed", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class FetchError(PollerError):
    """Raised on transport failures, non-success responses or malformed pages.

    Attributes:
        status: HTTP status of the failed request, if one was received.
        details: Optional payload for diagnostics.
    """

    def __init__(self, message: str = "Fetch failed", status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status = status
        self.details = details or {}


class PublishError(PollerError):
    """Wraps a subscriber failure. Logged by the cycle runner, never propagated."""

    def __init__(self, handler: Any, cause: BaseException):
        name = getattr(handler, "__qualname__", None) or type(handler).__name__
        super().__init__(f"Subscriber {name} failed: {cause!r}")
        self.handler = handler
        self.cause = cause


__all__ = ["PollerError", "ConfigError", "AuthError", "FetchError", "PublishError"]
