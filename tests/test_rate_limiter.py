import time

import pytest

from birthday_notifier.utils.rate_limiter import RateLimiter


class FakeWallClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def wall_clock(monkeypatch) -> FakeWallClock:
    """Freeze time.time(), which the limiter storage reads for every hit."""
    clock = FakeWallClock()
    monkeypatch.setattr(time, "time", clock)
    return clock


class TestRateLimiter:
    def test_allows_up_to_ceiling(self, wall_clock):
        limiter = RateLimiter(max_requests=3, window_seconds=60)

        assert [limiter.allow("10.0.0.1") for _ in range(4)] == [True, True, True, False]

    def test_keys_are_independent(self, wall_clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        assert limiter.allow("10.0.0.1") is True
        assert limiter.allow("10.0.0.2") is True
        assert limiter.allow("10.0.0.1") is False

    def test_window_slides(self, wall_clock):
        limiter = RateLimiter(max_requests=2, window_seconds=60)
        limiter.allow("client")
        wall_clock.now += 31
        limiter.allow("client")

        assert limiter.allow("client") is False

        # The first request leaves the window, freeing exactly one slot
        wall_clock.now += 30
        assert limiter.allow("client") is True
        assert limiter.allow("client") is False

    def test_remaining_and_retry_after(self, wall_clock):
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        assert limiter.remaining("client") == 2
        assert limiter.retry_after("client") == 0

        limiter.allow("client")
        wall_clock.now += 15
        limiter.allow("client")

        assert limiter.remaining("client") == 0
        assert limiter.retry_after("client") == 45

    def test_rejected_requests_do_not_extend_the_window(self, wall_clock):
        limiter = RateLimiter(max_requests=1, window_seconds=10)
        limiter.allow("client")

        for _ in range(5):
            wall_clock.now += 1
            assert limiter.allow("client") is False

        wall_clock.now += 6
        assert limiter.allow("client") is True

    def test_idle_clients_regain_full_quota(self, wall_clock):
        limiter = RateLimiter(max_requests=2, window_seconds=60)
        for i in range(1000):
            limiter.allow(f"10.0.{i // 256}.{i % 256}")

        wall_clock.now += 3600

        assert limiter.remaining("10.0.0.0") == 2
        assert limiter.retry_after("10.0.0.0") == 0

    def test_reset_and_clear(self, wall_clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.allow("a")
        limiter.allow("b")

        limiter.reset("a")
        assert limiter.allow("a") is True
        assert limiter.allow("b") is False

        limiter.clear()
        assert limiter.allow("b") is True
