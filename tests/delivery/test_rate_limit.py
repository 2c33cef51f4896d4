"""Tests for the per-endpoint sliding window limiter."""

from __future__ import annotations

import pytest

from feedrelay.delivery.rate_limit import RateLimitConfig, SlidingWindowLimiter


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def make_limiter(
    clock: FakeClock, max_requests: int = 5, window_ms: int = 2000
) -> SlidingWindowLimiter:
    return SlidingWindowLimiter(
        config=RateLimitConfig(max_requests=max_requests, window_ms=window_ms),
        _time_fn=clock,
    )


class TestRateLimitConfig:
    """Tests for RateLimitConfig."""

    def test_defaults_match_webhook_quota(self) -> None:
        """Default quota is 5 requests per 2 seconds."""
        config = RateLimitConfig()
        assert config.max_requests == 5
        assert config.window_ms == 2000

    def test_invalid_values_rejected(self) -> None:
        """Zero requests or a non-positive window is invalid."""
        with pytest.raises(ValueError):
            RateLimitConfig(max_requests=0)
        with pytest.raises(ValueError):
            RateLimitConfig(window_ms=0)


class TestSlidingWindowLimiter:
    """Tests for SlidingWindowLimiter.admit()/record()."""

    def test_burst_up_to_quota_is_admitted(self) -> None:
        """The first 5 sends pass immediately."""
        clock = FakeClock()
        limiter = make_limiter(clock)

        for _ in range(5):
            assert limiter.admit() == 0
            limiter.record()
            clock.advance(10)

    def test_sixth_send_waits_for_oldest_to_leave_window(self) -> None:
        """The 6th admit returns W - (now - oldest)."""
        clock = FakeClock()
        limiter = make_limiter(clock)
        first_ms = clock.now_ms
        for _ in range(5):
            limiter.record()
            clock.advance(100)

        wait_ms = limiter.admit()

        assert wait_ms == 2000 - (clock.now_ms - first_ms)
        assert wait_ms == 1500

    def test_sending_after_wait_keeps_rate_within_quota(self) -> None:
        """After waiting, every 2000 ms window holds at most 5 sends."""
        clock = FakeClock()
        limiter = make_limiter(clock)
        sent: list[int] = []

        for _ in range(12):
            wait_ms = limiter.admit()
            assert wait_ms >= 0
            clock.advance(wait_ms)
            assert limiter.admit() == 0
            limiter.record()
            sent.append(clock.now_ms)

        for ts in sent:
            in_window = [s for s in sent if ts <= s < ts + 2000]
            assert len(in_window) <= 5

    def test_admit_does_not_record(self) -> None:
        """admit() is a pure decision."""
        clock = FakeClock()
        limiter = make_limiter(clock, max_requests=1)

        assert limiter.admit() == 0
        assert limiter.admit() == 0
        assert limiter.recent_requests == 0

    def test_old_timestamps_are_pruned(self) -> None:
        """Timestamps older than the window no longer count."""
        clock = FakeClock()
        limiter = make_limiter(clock)
        for _ in range(5):
            limiter.record()

        clock.advance(2000)

        assert limiter.admit() == 0
        assert limiter.recent_requests == 0

    def test_reset(self) -> None:
        """reset() clears the window."""
        clock = FakeClock()
        limiter = make_limiter(clock, max_requests=1)
        limiter.record()
        assert limiter.admit() > 0

        limiter.reset()

        assert limiter.admit() == 0
