"""
Rate Limiter for the OCR recognizer
===================================
Sliding-window limiter with two caps (per second and per minute) matching the
published Google Vision quotas: 10 requests/second, 1800 requests/minute.

One instance is shared by every caller of a service; callers block until both
windows have room. The lock is only held to prune/check/record, never while
waiting, so waiting callers do not serialize each other.

Usage:
    limiter = RateLimiter(max_per_second=10, max_per_minute=1800)
    limiter.wait(cancel_event)   # raises RateLimitCancelled if cancel_event fires
    call_recognizer()
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Dict, Optional

from .errors import RateLimitCancelled, RateLimitTimeout

logger = logging.getLogger(__name__)

DEFAULT_MAX_PER_SECOND = 10
DEFAULT_MAX_PER_MINUTE = 1800


class RateLimiter:
    """
    Thread-safe dual sliding-window rate limiter.

    Args:
        max_per_second: Cap for the short window (0/None -> 10)
        max_per_minute: Cap for the long window (0/None -> 1800)
        second_window: Length of the short window in seconds
        minute_window: Length of the long window in seconds
        clock: Monotonic time source
    """

    def __init__(
        self,
        max_per_second: Optional[int] = DEFAULT_MAX_PER_SECOND,
        max_per_minute: Optional[int] = DEFAULT_MAX_PER_MINUTE,
        second_window: float = 1.0,
        minute_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_per_second = max_per_second or DEFAULT_MAX_PER_SECOND
        self.max_per_minute = max_per_minute or DEFAULT_MAX_PER_MINUTE
        self.second_window = second_window
        self.minute_window = minute_window
        self._clock = clock

        self._lock = threading.Lock()
        self._second_requests: deque = deque()
        self._minute_requests: deque = deque()

    def wait(self, cancel_event: Optional[threading.Event] = None, timeout: Optional[float] = None) -> None:
        """
        Block until a request may be made, then record it.

        Args:
            cancel_event: Set by the caller to abandon the wait
            timeout: Maximum seconds the caller is willing to block

        Raises:
            RateLimitCancelled: cancel_event was set while blocked
            RateLimitTimeout: admission would take longer than timeout
        """
        deadline = None if timeout is None else self._clock() + timeout

        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                wait_until = self._next_free_slot()

                if wait_until is None:
                    self._second_requests.append(now)
                    self._minute_requests.append(now)
                    return

            if deadline is not None and wait_until > deadline:
                raise RateLimitTimeout(wait_until - now, timeout)

            delay = wait_until - self._clock()
            if delay <= 0:
                continue

            logger.debug(f"Rate limit reached, waiting {delay:.3f}s")
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    logger.info("Rate limit wait cancelled by caller")
                    raise RateLimitCancelled("Cancelled while waiting for rate limiter")
            else:
                time.sleep(delay)

    def admit(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Like wait(), but reports cancellation as False instead of raising.
        """
        try:
            self.wait(cancel_event)
            return True
        except RateLimitCancelled:
            return False

    def _prune(self, now: float):
        """Drop timestamps that have left their window. Caller holds the lock."""
        second_cutoff = now - self.second_window
        while self._second_requests and self._second_requests[0] <= second_cutoff:
            self._second_requests.popleft()

        minute_cutoff = now - self.minute_window
        while self._minute_requests and self._minute_requests[0] <= minute_cutoff:
            self._minute_requests.popleft()

    def _next_free_slot(self) -> Optional[float]:
        """
        Instant at which the first full window frees a slot, or None if both
        windows have room. Caller holds the lock.
        """
        if len(self._second_requests) >= self.max_per_second:
            return self._second_requests[0] + self.second_window
        if len(self._minute_requests) >= self.max_per_minute:
            return self._minute_requests[0] + self.minute_window
        return None

    def stats(self) -> Dict[str, object]:
        """Current window occupancy"""
        with self._lock:
            self._prune(self._clock())
            in_second = len(self._second_requests)
            in_minute = len(self._minute_requests)

        return {
            "requests_last_second": in_second,
            "requests_last_minute": in_minute,
            "limit_per_second": self.max_per_second,
            "limit_per_minute": self.max_per_minute,
            "capacity_second": f"{in_second * 100 // self.max_per_second}%",
            "capacity_minute": f"{in_minute * 100 // self.max_per_minute}%",
        }


__all__ = [
    "RateLimiter",
    "DEFAULT_MAX_PER_SECOND",
    "DEFAULT_MAX_PER_MINUTE",
]
