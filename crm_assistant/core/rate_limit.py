"""
In-memory fixed-window admission control for assistant endpoints.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from .config import CHAT_RATE_LIMIT, RATE_LIMIT_WINDOW_SEC, THREAD_RATE_LIMIT
from ..util.logging import logger


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: int


class FixedWindowRateLimiter:
    """Counts requests per identifier inside aligned windows of `window_sec`."""

    def __init__(self, scope: str, limit: int, window_sec: int = RATE_LIMIT_WINDOW_SEC,
                 clock: Callable[[], float] = time.time):
        self.scope = scope
        self.limit = limit
        self.window_sec = window_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._counts: Dict[Tuple[str, int], int] = {}

    def hit(self, identifier: str) -> RateLimitResult:
        """Check admission and, when admitted, count the request."""
        now = self._clock()
        window = int(now // self.window_sec)
        reset_at = (window + 1) * self.window_sec

        with self._lock:
            self._evict(window)
            count = self._counts.get((identifier, window), 0)
            if count >= self.limit:
                retry_after = max(1, math.ceil(reset_at - now))
                result = RateLimitResult(False, 0, reset_at, retry_after)
            else:
                self._counts[(identifier, window)] = count + 1
                result = RateLimitResult(True, self.limit - count - 1, reset_at, 0)

        if not result.allowed:
            logger.log_rate_limit(identifier, self.scope, result.retry_after)
        return result

    def _evict(self, current_window: int):
        for key in [k for k in self._counts if k[1] < current_window]:
            del self._counts[key]


def chat_rate_limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter("chat", CHAT_RATE_LIMIT)


def thread_rate_limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter("threads", THREAD_RATE_LIMIT)
