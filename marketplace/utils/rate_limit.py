"""In-memory rate limiter used to slow down credential guessing."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class InMemoryRateLimiter:
    """Sliding-window limiter per key (client address + path)."""

    def __init__(self):
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        """Record an attempt for `key`.

        Returns `(allowed, retry_after_seconds)`; rejected attempts are not
        recorded.
        """
        now = time.monotonic()
        with self._lock:
            q = self._hits[key]
            cutoff = now - window_seconds
            while q and q[0] < cutoff:
                q.popleft()
            if len(q) >= max_requests:
                return False, max(1, int(window_seconds - (now - q[0])))
            q.append(now)
        return True, 0

    def reset(self, key: str) -> None:
        """Forget the attempts of `key`, e.g. after a successful login."""
        with self._lock:
            self._hits.pop(key, None)
