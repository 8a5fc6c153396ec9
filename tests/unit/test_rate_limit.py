"""Unit tests for escrow_api.rate_limit."""

import pytest

from escrow_api.rate_limit import SlidingWindowRateLimiter
from escrow_kernel.exceptions import RateLimitExceededError


class ManualTime:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def time_source() -> ManualTime:
    return ManualTime()


class TestSlidingWindow:

    def test_limit_and_remaining(self, time_source):
        limiter = SlidingWindowRateLimiter(2, 60, clock=time_source)
        assert limiter.hit("user:a") == 1
        assert limiter.hit("user:a") == 0
        with pytest.raises(RateLimitExceededError):
            limiter.hit("user:a")

    def test_window_slides(self, time_source):
        limiter = SlidingWindowRateLimiter(1, 60, clock=time_source)
        limiter.hit("user:a")
        time_source.now += 60
        assert limiter.hit("user:a") == 0

    def test_idle_keys_are_dropped(self, time_source):
        limiter = SlidingWindowRateLimiter(5, 60, clock=time_source)
        for i in range(1000):
            limiter.hit(f"user:{i}")
        assert limiter.tracked_keys() == 1000

        time_source.now += 10_000
        limiter.hit("user:fresh")

        assert limiter.tracked_keys() == 1

    def test_active_keys_survive_a_sweep(self, time_source):
        limiter = SlidingWindowRateLimiter(5, 60, clock=time_source)
        limiter.hit("user:idle")
        time_source.now += 30
        limiter.hit("user:busy")
        time_source.now += 40

        limiter.hit("user:new")

        assert limiter.tracked_keys() == 2
        for _ in range(4):
            limiter.hit("user:busy")
        with pytest.raises(RateLimitExceededError):
            limiter.hit("user:busy")

    @pytest.mark.parametrize("max_requests,window", [(0, 60), (5, 0)])
    def test_bounds_must_be_positive(self, max_requests, window):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(max_requests, window)
