"""Rate limiting using in-memory sliding window counters.

A ``RateLimiterStore`` keeps one window per key (openid for the per-user
limiter, client IP for the global one). Timestamps live in a deque so the
oldest request, which decides the retry-after hint, is O(1) to read.

Stale timestamps are pruned on every check, before counting, so the live
count never includes requests that already left the window.

Returns standard rate limit metadata for response headers:
- X-RateLimit-Limit
- X-RateLimit-Remaining
- Retry-After
"""

import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

DEFAULT_MAX_IDLE_SECONDS = 3600.0


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


@dataclass
class _Window:
    timestamps: deque[float] = field(default_factory=deque)
    last_cleanup: float = 0.0


class RateLimiterStore:
    """Sliding window counters keyed by an opaque identifier.

    ``check_and_record`` and ``check_and_record_all`` are the only mutation
    paths and run under a lock, so concurrent calls for the same key
    (coroutines or threads) can never both take the last free slot.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def _evaluate(self, key: str, max_requests: int, window_seconds: float, now: float):
        window = self._windows.get(key)
        if window is None:
            window = _Window(last_cleanup=now)
            self._windows[key] = window

        # Prune expired timestamps from the left
        window_start = now - window_seconds
        while window.timestamps and window.timestamps[0] <= window_start:
            window.timestamps.popleft()
        window.last_cleanup = now

        if len(window.timestamps) >= max_requests:
            # Time until the oldest request in the window expires
            retry_after = window.timestamps[0] + window_seconds - now
            return window, RateLimitResult(
                allowed=False,
                limit=max_requests,
                remaining=0,
                retry_after_seconds=max(1, math.ceil(retry_after)),
            )

        return window, RateLimitResult(
            allowed=True,
            limit=max_requests,
            remaining=max(0, max_requests - len(window.timestamps) - 1),
            retry_after_seconds=0,
        )

    async def check_and_record(
        self, key: str, max_requests: int, window_seconds: float
    ) -> RateLimitResult:
        """Check the key's window and record this request if allowed.

        Args:
            key: Opaque identifier (openid or client IP), never a raw token.
            max_requests: Max requests allowed inside the window.
            window_seconds: Sliding window length.
        """
        return await self.check_and_record_all([(key, max_requests, window_seconds)])

    async def check_and_record_all(
        self, limits: list[tuple[str, int, float]]
    ) -> RateLimitResult:
        """Admit one request against several windows at once.

        The request is recorded in every window or in none. When more than
        one window is full, the longest retry-after wins. Keys must be
        distinct. On success the result describes the tightest window.
        """
        with self._lock:
            now = self._clock()
            evaluated = [self._evaluate(key, max_requests, seconds, now) for key, max_requests, seconds in limits]

            denied = [result for _, result in evaluated if not result.allowed]
            if denied:
                return max(denied, key=lambda r: r.retry_after_seconds)

            for window, _ in evaluated:
                window.timestamps.append(now)
            return min((result for _, result in evaluated), key=lambda r: r.remaining)

    def sweep(self, max_idle_seconds: float = DEFAULT_MAX_IDLE_SECONDS) -> int:
        """Drop windows untouched for longer than ``max_idle_seconds``.

        Returns the number of windows removed. The host application owns
        the schedule (see the lifespan task in ``hookedlee.main``).
        """
        with self._lock:
            cutoff = self._clock() - max_idle_seconds
            idle = [key for key, w in self._windows.items() if w.last_cleanup < cutoff]
            for key in idle:
                del self._windows[key]
            return len(idle)

    def reset(self, key: str) -> None:
        """Clear rate limit state for one key."""
        with self._lock:
            self._windows.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()
