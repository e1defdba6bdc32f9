"""Short-lived cache of the backend's last observed health."""

import time
from collections.abc import Callable


class BackendHealthCache:
    """Tri-state health verdict (True, False, or None for unknown).

    A False verdict only short-circuits the backend while it is fresh; once
    ``cache_duration_seconds`` pass, the next request tries the backend
    again so recovery is picked up automatically.
    """

    def __init__(self, cache_duration_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.cache_duration_seconds = cache_duration_seconds
        self._clock = clock
        self.is_healthy: bool | None = None
        self.last_checked_at: float = 0.0

    def record(self, healthy: bool) -> None:
        self.is_healthy = healthy
        self.last_checked_at = self._clock()

    def invalidate(self) -> None:
        """Forget the verdict, e.g. after the backend URL changes."""
        self.is_healthy = None
        self.last_checked_at = 0.0

    def is_fresh(self) -> bool:
        if self.is_healthy is None:
            return False
        return self._clock() - self.last_checked_at < self.cache_duration_seconds

    def should_skip_backend(self) -> bool:
        return self.is_healthy is False and self.is_fresh()
