"""Rate limiting for metadata lookups."""

import logging
import time
from threading import Lock
from typing import Optional

logger = logging.getLogger("media_courier.rate_limiter")


class RateLimiter:
    """Token bucket rate limiter with thread safety.

    Metadata lookups run in worker threads, so ``acquire`` blocks the
    calling thread rather than the event loop.
    """

    def __init__(self, calls_per_second: float, burst_size: Optional[int] = None):
        """
        Initialize rate limiter.

        Args:
            calls_per_second: Maximum sustained calls per second
            burst_size: Maximum burst size (defaults to calls_per_second)
        """
        self.rate = calls_per_second
        self.burst = burst_size or max(1, int(calls_per_second))
        self.tokens = float(self.burst)
        self.last_update = time.monotonic()
        self.lock = Lock()

    def _refill(self, now: float):
        elapsed = now - self.last_update
        self.tokens = min(self.burst, self.tokens + elapsed * self.rate)
        self.last_update = now

    def acquire(self, blocking: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Acquire permission for one lookup.

        Args:
            blocking: If True, wait until a token is available
            timeout: Maximum time to wait in seconds (None = infinite)

        Returns:
            True if acquired, False if timeout or non-blocking and no tokens
        """
        start_time = time.monotonic()
        logged = False

        while True:
            with self.lock:
                now = time.monotonic()
                self._refill(now)

                if self.tokens >= 1:
                    self.tokens -= 1
                    return True

                if not blocking:
                    return False

                wait_time = (1 - self.tokens) / self.rate

            if timeout is not None:
                remaining = timeout - (time.monotonic() - start_time)
                if remaining <= 0:
                    return False
                wait_time = min(wait_time, remaining)

            if not logged:
                logger.debug("Rate limiting active, waiting %.2fs", wait_time)
                logged = True
            time.sleep(wait_time)
