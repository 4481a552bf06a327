"""Sliding window rate limiter -- zero external dependencies."""
from __future__ import annotations

import threading
import time
from collections import deque


class SlidingWindowRateLimiter:
    """Per-key request limiter over a sliding time window.

    Uses collections.deque for O(1) append and efficient cleanup.
    """

    def __init__(self, max_requests: int = 120, window_seconds: float = 60.0, enabled: bool = True) -> None:
        self._max = max_requests
        self._window = window_seconds
        self._enabled = enabled and max_requests > 0
        self._windows: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def check(self, key: str) -> tuple[bool, float]:
        """Check and record one request for key.

        Returns (allowed, retry_after_seconds). Rejected requests are not recorded.
        """
        if not self._enabled:
            return True, 0.0

        now = time.monotonic()
        with self._lock:
            dq = self._windows.setdefault(key, deque())
            # Purge expired entries
            cutoff = now - self._window
            while dq and dq[0] <= cutoff:
                dq.popleft()
            if len(dq) >= self._max:
                return False, max(0.0, dq[0] + self._window - now)
            dq.append(now)
            return True, 0.0

    def prune(self) -> int:
        """Drop keys whose windows are empty. Returns number removed."""
        cutoff = time.monotonic() - self._window
        removed = 0
        with self._lock:
            for key in list(self._windows):
                dq = self._windows[key]
                while dq and dq[0] <= cutoff:
                    dq.popleft()
                if not dq:
                    del self._windows[key]
                    removed += 1
        return removed

    def reset(self, key: str = "") -> None:
        """Reset counters for one key, or all keys."""
        with self._lock:
            if key:
                self._windows.pop(key, None)
            else:
                self._windows.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"tracked_clients": len(self._windows)}
