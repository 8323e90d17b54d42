#!/usr/bin/env python3
"""
Utility classes and functions for the feed client.

This module contains shared utilities used by the request coordinator and the
command-line entry point: request throttling, retry delays and text helpers.
"""

from asyncio import Lock, sleep
from time import monotonic

# Import config to use unified logging
from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class RateLimiter:
    """A minimum-interval throttle for one logical request line.

    Successive acquisitions are spaced at least ``min_interval`` seconds apart.
    Callers arriving early wait out the remainder instead of being dropped.
    """

    def __init__(self, min_interval: float):
        """Initialize the rate limiter.

        Args:
            min_interval: Minimum number of seconds between two acquisitions.
                          If 0 or negative, no rate limiting is applied.
        """
        self.min_interval = max(float(min_interval), 0.0)
        self.last_request_time = None
        self._lock = Lock()

    def remaining(self) -> float:
        """Seconds left before the next acquisition may proceed without waiting."""
        if self.min_interval <= 0 or self.last_request_time is None:
            return 0.0
        return max(self.min_interval - (monotonic() - self.last_request_time), 0.0)

    async def acquire(self):
        """Acquire permission to make a request, waiting if necessary to respect the interval."""
        if self.min_interval <= 0:
            self.last_request_time = monotonic()
            return

        async with self._lock:
            wait_time = self.remaining()
            if wait_time > 0:
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)

            self.last_request_time = monotonic()  # Update to current time after potential wait


class RetryHelper:
    """Helper class for bounded retries with growing delay."""

    def __init__(self, max_retries: int = 3, base_delay: float = 2.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts after the first call
            base_delay: Delay unit in seconds; attempt N waits base_delay * N
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Args:
            attempt: The retry number (1-based), so the defaults yield 2s, 4s, 6s

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * max(attempt, 1)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix
