"""Fixed-window rate limiter."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

import structlog

logger = structlog.stdlib.get_logger(__name__)

R = TypeVar("R")

ONE_MINUTE_SECS = 60.0


class _Window:
    __slots__ = ("started_at", "count")

    def __init__(self, started_at: float) -> None:
        self.started_at = started_at
        self.count = 0


class RateLimiter:
    """Admits at most ``limit`` calls per key per window.

    A key's window starts at its first call and lasts ``window_seconds``.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = ONE_MINUTE_SECS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._pruned_at = clock()

    @property
    def limit(self) -> int:
        return self._limit

    def __len__(self) -> int:
        """Number of keys with a tracked window."""
        return len(self._windows)

    def allow(self, key: str) -> bool:
        """Count a call for key and report whether it is admitted."""
        now = self._clock()
        if now - self._pruned_at >= self._window_seconds:
            self._prune(now)
        window = self._windows.get(key)
        if window is None or now - window.started_at >= self._window_seconds:
            window = _Window(now)
            self._windows[key] = window

        if window.count >= self._limit:
            logger.debug("rate limit exceeded", key=key)
            return False
        window.count += 1
        return True

    def _prune(self, now: float) -> None:
        expired = [
            k for k, w in self._windows.items() if now - w.started_at >= self._window_seconds
        ]
        for k in expired:
            del self._windows[k]
        self._pruned_at = now

    def rate_limited(self, key: str, fn: Callable[[], R]) -> R | None:
        """Call fn if key is admitted, otherwise return None."""
        if not self.allow(key):
            return None
        return fn()

    def reset(self) -> None:
        self._windows.clear()
        self._pruned_at = self._clock()
