"""
Sliding-window rate limiter keyed by caller identity.

Backed by the ``limits`` moving-window strategy: a request is accepted
only while fewer than ``max_requests`` were accepted for the same key in
the last ``window_seconds``. Rejected requests are not recorded.

Example:
    With 100 requests / 60s, a client that made 100 requests at 10:00:00
    is accepted again just after 10:01:00.

The default ``memory://`` storage is per process and expires idle keys on
its own. Point ``storage_uri`` at Redis (``redis://...``) to share one
ceiling between several instances.
"""

import math
import time

from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

NAMESPACE = "birthday_notifier"


class RateLimiter:
    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: int = 60,
        storage_uri: str = "memory://",
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._item = RateLimitItemPerSecond(max_requests, window_seconds)
        self._storage = storage_from_string(storage_uri)
        self._strategy = MovingWindowRateLimiter(self._storage)

    def allow(self, key: str) -> bool:
        """Record a request for ``key`` and report whether it is within the limit."""
        return self._strategy.hit(self._item, NAMESPACE, key)

    def remaining(self, key: str) -> int:
        _, remaining = self._strategy.get_window_stats(self._item, NAMESPACE, key)
        return max(0, remaining)

    def retry_after(self, key: str) -> int:
        """Seconds until the oldest request in the window expires."""
        reset_time, remaining = self._strategy.get_window_stats(self._item, NAMESPACE, key)
        if remaining > 0:
            return 0
        return max(1, math.ceil(reset_time - time.time()))

    def reset(self, key: str) -> None:
        self._strategy.clear(self._item, NAMESPACE, key)

    def clear(self) -> None:
        self._storage.reset()
