"""
Token bucket shared by every Gestão Click request.

Betel Tecnologia throttles per access token (a few requests per second, with
a per-minute ceiling). Listing a 31-day window can walk up to 50 pages, and
the background syncer may run while an operator triggers an import, so all
traffic goes through one bucket.
"""
import asyncio
import logging
import time
from collections import deque

logger = logging.getLogger(__name__)


class TokenBucket:
    """Async token bucket with a per-second rate and a per-minute ceiling."""

    def __init__(self, rate_per_sec: float = 3.0, max_per_min: int = 150, clock=time.monotonic):
        self._rate = rate_per_sec
        self._max_per_min = max_per_min
        self._clock = clock

        self._tokens = rate_per_sec
        self._max_tokens = rate_per_sec
        self._last_refill = clock()

        self._recent: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        self._tokens = min(self._max_tokens, self._tokens + elapsed * self._rate)
        self._last_refill = now

    def _prune(self, now: float) -> None:
        cutoff = now - 60.0
        while self._recent and self._recent[0] < cutoff:
            self._recent.popleft()

    def try_acquire(self) -> float:
        """Consume a token if one is free. Returns 0, or seconds to wait."""
        now = self._clock()
        self._refill(now)
        self._prune(now)

        if self._tokens >= 1.0 and len(self._recent) < self._max_per_min:
            self._tokens -= 1.0
            self._recent.append(now)
            return 0.0
        if self._tokens < 1.0:
            return (1.0 - self._tokens) / self._rate
        return self._recent[0] + 60.0 - now

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                wait = self.try_acquire()
            if wait <= 0:
                return
            logger.debug("Gestão Click rate limit: waiting %.2fs", wait)
            await asyncio.sleep(max(wait, 0.01))


gestao_click_limiter = TokenBucket()
