import pytest

from signalgate.config.settings import RateLimitConfig
from signalgate.errors import RateLimitExceeded
from signalgate.risk.rate_limit import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_sliding_window_limits_and_recovers() -> None:
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(max_requests=2, window_sec=10, mode="sliding"), clock=clock)
    assert limiter.try_acquire() == 0.0
    clock.now += 4
    assert limiter.try_acquire() == 0.0
    clock.now += 1
    assert limiter.try_acquire() == pytest.approx(5.0)
    clock.now += 5.5
    # the first hit has left the window
    assert limiter.try_acquire() == 0.0


def test_fixed_window_resets() -> None:
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(max_requests=1, window_sec=60, mode="fixed"), clock=clock)
    limiter.acquire()
    clock.now += 30
    with pytest.raises(RateLimitExceeded) as exc:
        limiter.acquire()
    assert exc.value.retry_after_sec == pytest.approx(30.0)
    clock.now += 30
    limiter.acquire()


def test_stats_reports_window() -> None:
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(max_requests=3, window_sec=60), clock=clock)
    limiter.acquire()
    limiter.acquire()
    stats = limiter.stats()
    assert stats["mode"] == "sliding"
    assert stats["in_window"] == 2
    assert stats["remaining"] == 1
    assert stats["rejected_total"] == 0
