import asyncio

import pytest

from birthday_notifier.utils.circuit_breaker import CircuitBreaker, CircuitState
from birthday_notifier.utils.errors import CircuitOpenError


class FakeMonotonic:
    def __init__(self, start: float = 500.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


async def succeed():
    return "ok"


async def fail():
    raise RuntimeError("downstream unavailable")


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def breaker(monotonic) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, reset_timeout=30.0, name="test", clock=monotonic)


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.call(fail)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_closed_passes_results_through(self, breaker):
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, breaker):
        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        await trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

    @pytest.mark.asyncio
    async def test_success_clears_failure_streak(self, breaker):
        await trip(breaker, 2)
        await breaker.call(succeed)
        await trip(breaker, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 2

    @pytest.mark.asyncio
    async def test_half_open_after_reset_timeout(self, breaker, monotonic):
        await trip(breaker, 3)

        monotonic.now += 29
        assert breaker.state == CircuitState.OPEN

        monotonic.now += 1
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, breaker, monotonic):
        await trip(breaker, 3)
        monotonic.now += 30

        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens_with_fresh_timer(self, breaker, monotonic):
        await trip(breaker, 3)
        monotonic.now += 30

        await trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

        monotonic.now += 29
        assert breaker.state == CircuitState.OPEN
        monotonic.now += 1
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_the_half_open_slot(self, breaker, monotonic):
        async def cancelled():
            raise asyncio.CancelledError()

        await trip(breaker, 3)
        monotonic.now += 30

        with pytest.raises(asyncio.CancelledError):
            await breaker.call(cancelled)

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        await trip(breaker, 3)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(succeed) == "ok"
