"""Fixed-window counters keyed by sender domain, recipient, or org."""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_at: float


class FixedWindowRateLimiter:
    """Counts hits per key inside a fixed window; the window resets atomically when it expires.

    ``hit`` is safe to call from several threads and tasks at once.
    """

    def __init__(self, limit: int, window_s: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if limit < 1 or window_s <= 0:
            raise ValueError("limit must be >= 1 and window_s > 0")
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, key: str, cost: int = 1) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_s:
                started, count = now, 0
            allowed = count + cost <= self.limit
            if allowed:
                count += cost
            self._windows[key] = (started, count)
        return RateLimitDecision(
            allowed=allowed,
            count=count,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=started + self.window_s,
        )

    def peek(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_s:
                return 0
            return count

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
