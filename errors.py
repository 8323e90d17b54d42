#!/usr/bin/env python3
"""Common error types shared across modules.

Provides the feed client's error taxonomy in one place to avoid circular imports.
"""

from typing import Any, Dict, Optional

RATE_LIMITED_MESSAGE = "Server busy, try again shortly"

# Laravel's throttle middleware message for HTTP 429
_RATE_LIMIT_MARKER = "too many attempts"
HTTP_TOO_MANY_REQUESTS = 429


class FeedError(Exception):
    """Base class for every error raised by the feed client.

    Attributes:
        action: Optional label of the user action that failed (e.g. "like achievement").
    """

    def __init__(self, message: str = "", action: Optional[str] = None):
        super().__init__(message)
        self.action = action


class BusyError(FeedError):
    """An equivalent operation is already in flight; absorb or show a disabled control."""


class SupersededError(FeedError):
    """A fetch was cancelled by a newer one on the same channel; its result is discarded."""


class RateLimitedError(FeedError):
    """Rate-limit backoff retries were exhausted."""

    def __init__(self, message: str = RATE_LIMITED_MESSAGE, action: Optional[str] = None):
        super().__init__(message, action)


class NetworkOrServerError(FeedError):
    """Any other transport or server failure.

    Attributes:
        status: HTTP status code when the server answered, else None.
        details: Optional decoded error payload for diagnostics.
    """

    def __init__(
        self,
        message: str = "Request failed",
        action: Optional[str] = None,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, action)
        self.status = status
        self.details = details or {}


class ValidationError(FeedError):
    """A client-side precondition failed before any network call."""


class NotAuthorizedError(ValidationError):
    """The current user may not perform this action on the target."""


def is_rate_limit_error(error: BaseException) -> bool:
    """Return True when an exception carries a rate-limit signal (HTTP 429 or throttle text)."""
    status = getattr(error, "status", None)
    if status == HTTP_TOO_MANY_REQUESTS:
        return True
    return _RATE_LIMIT_MARKER in str(error).lower()


def action_message(action: str) -> str:
    """User-facing failure text for an action label, e.g. 'Failed to like achievement'."""
    return f"Failed to {action}"


__all__ = [
    "FeedError",
    "BusyError",
    "SupersededError",
    "RateLimitedError",
    "NetworkOrServerError",
    "ValidationError",
    "NotAuthorizedError",
    "is_rate_limit_error",
    "action_message",
    "RATE_LIMITED_MESSAGE",
    "HTTP_TOO_MANY_REQUESTS",
]
