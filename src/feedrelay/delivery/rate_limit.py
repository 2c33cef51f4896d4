"""
Per-endpoint sliding window rate limiter.

Mirrors the webhook quota exactly: at most N requests in any W ms window.
Short bursts up to the quota pass immediately, the next request is deferred
until the oldest one leaves the window.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

# Discord webhook quota: 5 requests per 2 seconds
DEFAULT_MAX_REQUESTS = 5
DEFAULT_WINDOW_MS = 2000


@dataclass
class RateLimitConfig:
    """Quota for one endpoint."""

    max_requests: int = DEFAULT_MAX_REQUESTS
    window_ms: int = DEFAULT_WINDOW_MS

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError(f"max_requests must be >= 1, got {self.max_requests}")
        if self.window_ms <= 0:
            raise ValueError(f"window_ms must be > 0, got {self.window_ms}")


@dataclass
class SlidingWindowLimiter:
    """
    Sliding window of recent send timestamps.

    admit() is a pure decision; the caller must record() after each request
    that actually went out.
    """

    config: RateLimitConfig = field(default_factory=RateLimitConfig)

    _timestamps: deque[int] = field(default_factory=deque)

    # Optional time provider for deterministic tests
    _time_fn: Callable[[], int] | None = field(default=None)

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.monotonic() * 1000)

    def _prune(self, now_ms: int) -> None:
        """Drop timestamps that have left the window."""
        while self._timestamps and now_ms - self._timestamps[0] >= self.config.window_ms:
            self._timestamps.popleft()

    def admit(self) -> int:
        """
        Decide whether a send may proceed now.

        Returns:
            Milliseconds to wait before sending (0 = send now).
        """
        now_ms = self._now_ms()
        self._prune(now_ms)
        if len(self._timestamps) < self.config.max_requests:
            return 0
        oldest = self._timestamps[0]
        return max(0, self.config.window_ms - (now_ms - oldest))

    def record(self) -> None:
        """Record a request that was actually sent."""
        self._timestamps.append(self._now_ms())

    @property
    def recent_requests(self) -> int:
        """Number of requests currently inside the window."""
        self._prune(self._now_ms())
        return len(self._timestamps)

    def reset(self) -> None:
        self._timestamps.clear()
