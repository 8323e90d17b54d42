#!/usr/bin/env python3
"""
Request coordination for feed fetches.

A ``RequestCoordinator`` runs zero-argument fetch coroutines on named
channels (e.g. ``"feed:all"``). Per channel it enforces:

- single-flight: a second call while one is in flight raises ``BusyError``,
  unless the caller asks to supersede it;
- a minimum interval between successive executions (callers wait, never dropped);
- supersession: a superseded fetch is cancelled and its result, should it
  still arrive, is never returned (``SupersededError``);
- bounded backoff on rate-limit responses, surfacing ``RateLimitedError``.

Channel state lives on the coordinator instance, so independent feeds in the
same process do not share throttles or in-flight flags.
"""

from asyncio import CancelledError, Task, ensure_future
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from config import config, get_logger
from errors import (
    BusyError,
    FeedError,
    NetworkOrServerError,
    RateLimitedError,
    SupersededError,
    is_rate_limit_error,
)
from utils import RateLimiter, RetryHelper

logger = get_logger("coordinator")

T = TypeVar("T")
FetchFn = Callable[[], Awaitable[T]]


@dataclass
class ChannelState:
    """Mutable bookkeeping for one request channel."""
    key: str
    limiter: RateLimiter
    generation: int = 0
    in_flight: Optional[Task] = None

    @property
    def busy(self) -> bool:
        return self.in_flight is not None and not self.in_flight.done()


class RequestCoordinator:
    """Single-flight, throttled, cancellable execution of fetches per channel.

    Args:
        min_interval: Seconds between successive executions on a channel
                      (defaults to config.FEED_MIN_REQUEST_INTERVAL)
        max_retries: Rate-limit retries after the first attempt
                     (defaults to config.FEED_RATE_LIMIT_RETRIES)
        backoff_base: Retry N waits backoff_base * N seconds
                      (defaults to config.FEED_RATE_LIMIT_BACKOFF_BASE)
    """

    def __init__(
        self,
        min_interval: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ) -> None:
        self.min_interval = config.FEED_MIN_REQUEST_INTERVAL if min_interval is None else min_interval
        self.retry_helper = RetryHelper(
            max_retries=config.FEED_RATE_LIMIT_RETRIES if max_retries is None else max_retries,
            base_delay=config.FEED_RATE_LIMIT_BACKOFF_BASE if backoff_base is None else backoff_base,
        )
        self._channels: Dict[str, ChannelState] = {}

    def _channel(self, key: str) -> ChannelState:
        state = self._channels.get(key)
        if state is None:
            state = ChannelState(key=key, limiter=RateLimiter(self.min_interval))
            self._channels[key] = state
        return state

    def is_busy(self, key: str) -> bool:
        state = self._channels.get(key)
        return bool(state and state.busy)

    def generation(self, key: str) -> int:
        state = self._channels.get(key)
        return state.generation if state else 0

    def cancel(self, key: str) -> bool:
        """Cancel the in-flight fetch on a channel, if any.

        The generation is bumped first, so even a transport that ignores the
        cancellation cannot deliver its result. Returns True if something was cancelled.
        """
        state = self._channels.get(key)
        if state is None or not state.busy:
            return False
        state.generation += 1
        state.in_flight.cancel()
        logger.debug(f"Cancelled in-flight request on {key} (generation now {state.generation})")
        return True

    async def execute(self, key: str, fetch_fn: FetchFn, *, supersede: bool = False) -> Any:
        """Run ``fetch_fn`` on channel ``key`` and return its result.

        Raises:
            BusyError: another request is in flight and ``supersede`` is False
            SupersededError: this request was cancelled by a newer one
            RateLimitedError: rate-limit retries were exhausted
            NetworkOrServerError: any other failure
        """
        state = self._channel(key)
        if state.busy:
            if not supersede:
                raise BusyError(f"Request already in flight on {key}")
            self.cancel(key)

        state.generation += 1
        generation = state.generation
        task = ensure_future(self._run(state, fetch_fn))
        state.in_flight = task
        try:
            result = await task
        except CancelledError:
            if task.cancelled() and state.generation != generation:
                raise SupersededError(f"Request on {key} was superseded")
            raise
        finally:
            if state.in_flight is task:
                state.in_flight = None

        if state.generation != generation:
            logger.debug(f"Discarding stale result on {key} (generation {generation} < {state.generation})")
            raise SupersededError(f"Request on {key} was superseded")
        return result

    async def _run(self, state: ChannelState, fetch_fn: FetchFn) -> Any:
        """Throttle, then call ``fetch_fn`` with bounded retries on rate limiting."""
        await state.limiter.acquire()
        attempt = 0
        while True:
            try:
                return await fetch_fn()
            except Exception as e:
                if not is_rate_limit_error(e):
                    if isinstance(e, FeedError):
                        raise
                    raise NetworkOrServerError(str(e) or type(e).__name__) from e
                if attempt >= self.retry_helper.max_retries:
                    logger.error(f"Rate limited on {state.key}; giving up after {attempt} retries")
                    raise RateLimitedError(action=getattr(e, "action", None)) from e
                attempt += 1
                delay = self.retry_helper.calculate_delay(attempt)
                logger.warning(
                    f"Rate limited on {state.key}, retrying in {delay:.1f}s "
                    f"(attempt {attempt}/{self.retry_helper.max_retries})"
                )
                await self.retry_helper.sleep_for_attempt(attempt)
                await state.limiter.acquire()


__all__ = ["RequestCoordinator", "ChannelState"]
