"""Sliding-window rate limiting keyed by client."""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable


@dataclass
class RateDecision:
    """Outcome of one rate-limit check."""
    allowed: bool
    remaining: int
    retry_after: int  # seconds until a slot frees up, 0 when allowed


class SlidingWindowRateLimiter:
    """Allows ``limit`` hits per key in any rolling ``window`` seconds.

    Expired hits are dropped when a key is checked; keys with no hits left in
    the window are swept every ``sweep_every`` checks.
    """

    def __init__(
        self,
        limit: int = 3,
        window: float = 60.0,
        now: Callable[[], float] = time.monotonic,
        sweep_every: int = 100,
    ):
        if limit < 1 or window <= 0:
            raise ValueError("limit must be >= 1 and window > 0")
        self.limit = limit
        self.window = window
        self._now = now
        self._sweep_every = sweep_every
        self._hits: dict[str, deque[float]] = {}
        self._checks = 0
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateDecision:
        """Record a request from ``key`` if it is within the limit."""
        with self._lock:
            now = self._now()
            self._checks += 1
            if self._checks % self._sweep_every == 0:
                self._sweep(now)

            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self.window:
                hits.popleft()

            if len(hits) >= self.limit:
                retry_after = max(1, int(hits[0] + self.window - now + 0.999))
                return RateDecision(allowed=False, remaining=0, retry_after=retry_after)

            hits.append(now)
            return RateDecision(allowed=True, remaining=self.limit - len(hits), retry_after=0)

    def _sweep(self, now: float) -> None:
        cutoff = now - self.window
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def __len__(self) -> int:
        return len(self._hits)
