"""
In-process sliding-window rate limiter.

The limiter instance lives on ``app.state``; nothing here is a module-level
singleton.  Counts are per process, so a multi-worker deployment allows up
to ``workers * max_requests`` per window.  Keys idle for a whole window are
swept at most once per window, so memory tracks the active keys only.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable

from escrow_kernel.exceptions import RateLimitExceededError
from escrow_kernel.logging_config import get_logger

logger = get_logger("api.rate_limit")


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` hits per key in any ``window_seconds``."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def hit(self, key: str) -> int:
        """
        Record one request for ``key``.

        Returns the number of requests left in the current window.

        Raises:
            RateLimitExceededError: the key is already at its limit.  The
                rejected request is not counted.
        """
        now = self._clock()
        cutoff = now - self._window_seconds
        with self._lock:
            if now - self._last_sweep >= self._window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self._max_requests:
                logger.warning(
                    "rate_limit_exceeded",
                    extra={"rate_limit_key": key, "limit": self._max_requests},
                )
                raise RateLimitExceededError(key, self._max_requests, self._window_seconds)
            hits.append(now)
            return self._max_requests - len(hits)

    def _sweep(self, cutoff: float) -> None:
        """Drop keys with no hit inside the window. Caller holds the lock."""
        stale = [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for k in stale:
            del self._hits[k]
        if stale:
            logger.debug("rate_limit_keys_swept", extra={"swept": len(stale)})

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
