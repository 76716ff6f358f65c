"""Tests for the circuit breaker."""

import asyncio

import pytest

from cmconnector.config.models import CircuitBreakerConfig
from cmconnector.core.exceptions import CircuitOpenError, ConnectionError, QueryError
from cmconnector.resilience.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 500.0

    def __call__(self) -> float:
        return self.now


class Backend:
    """Coroutine function whose outcome is switched by the test."""

    def __init__(self) -> None:
        self.calls = 0
        self.error = None

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return "rows"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return Backend()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("cm-prod", failure_threshold=3, window=60, cool_down=30, clock=clock)


async def fail_times(breaker, backend, count):
    backend.error = ConnectionError("reset")
    for _ in range(count):
        with pytest.raises(ConnectionError):
            await breaker.call(backend)


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.mark.asyncio
    async def test_closed_passes_calls(self, breaker, backend):
        """Test calls pass through while closed."""
        assert await breaker.call(backend) == "rows"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker, backend):
        """Test the breaker opens after consecutive failures."""
        await fail_times(breaker, backend, 2)
        assert breaker.state is CircuitState.CLOSED

        await fail_times(breaker, backend, 1)
        assert breaker.state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_fails_fast_without_io(self, breaker, backend, clock):
        """Test an open breaker rejects without calling the backend."""
        await fail_times(breaker, backend, 3)
        calls = backend.calls
        clock.now += 10

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(backend)

        assert backend.calls == calls
        assert exc_info.value.retry_after == pytest.approx(20.0)
        assert breaker.retry_after == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker, backend):
        """Test a success clears earlier failures."""
        await fail_times(breaker, backend, 2)
        backend.error = None
        await breaker.call(backend)
        await fail_times(breaker, backend, 2)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.get_stats()["consecutive_failures"] == 2

    @pytest.mark.asyncio
    async def test_failures_outside_window_expire(self, breaker, backend, clock):
        """Test old failures fall out of the sliding window."""
        await fail_times(breaker, backend, 2)
        clock.now += 61
        await fail_times(breaker, backend, 1)

        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_success_closes(self, breaker, backend, clock):
        """Test a successful probe closes the breaker."""
        await fail_times(breaker, backend, 3)
        clock.now += 30
        backend.error = None

        assert await breaker.call(backend) == "rows"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_failure_reopens(self, breaker, backend, clock):
        """Test a failed probe re-opens for another cool down."""
        await fail_times(breaker, backend, 3)
        clock.now += 30

        await fail_times(breaker, backend, 1)

        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_after == pytest.approx(30.0)
        assert breaker.get_stats()["open_count"] == 2

    @pytest.mark.asyncio
    async def test_half_open_admits_single_probe(self, breaker, clock):
        """Test concurrent callers are rejected while a probe is in flight."""
        backend = Backend()
        await fail_times(breaker, backend, 3)
        clock.now += 30
        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "probe"

        probe = asyncio.create_task(breaker.call(slow_probe))
        await asyncio.sleep(0)
        assert breaker.state is CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.call(backend)

        release.set()
        assert await probe == "probe"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_check_rejects_only_while_cooling_down(self, breaker, backend, clock):
        """Test check() fails fast while open and admits once a probe is due."""
        breaker.check()
        await fail_times(breaker, backend, 3)

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.check()
        assert exc_info.value.retry_after == pytest.approx(30.0)

        clock.now += 30
        breaker.check()
        assert breaker.state is CircuitState.OPEN
        assert await breaker.call(backend) == "rows"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_check_rejects_while_probe_in_flight(self, breaker, clock):
        backend = Backend()
        await fail_times(breaker, backend, 3)
        clock.now += 30
        release = asyncio.Event()

        async def slow_probe():
            await release.wait()

        probe = asyncio.create_task(breaker.call(slow_probe))
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            breaker.check()

        release.set()
        await probe

    @pytest.mark.asyncio
    async def test_ignored_errors_do_not_count(self, breaker, backend):
        """Test query errors are neither failures nor successes."""
        backend.error = QueryError("bad column")
        for _ in range(5):
            with pytest.raises(QueryError):
                await breaker.call(backend)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.get_stats()["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_ignored_error_releases_probe(self, breaker, backend, clock):
        """Test an ignored error during a probe leaves the breaker half-open."""
        await fail_times(breaker, backend, 3)
        clock.now += 30
        backend.error = QueryError("bad column")

        with pytest.raises(QueryError):
            await breaker.call(backend)

        assert breaker.state is CircuitState.HALF_OPEN
        backend.error = None
        assert await breaker.call(backend) == "rows"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_disabled_breaker_never_opens(self, clock, backend):
        """Test a disabled breaker passes every call through."""
        breaker = CircuitBreaker("cm-prod", failure_threshold=1, enabled=False, clock=clock)

        await fail_times(breaker, backend, 3)
        backend.error = None

        assert await breaker.call(backend) == "rows"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_force_open_and_reset(self, breaker, backend):
        """Test manual state control."""
        await breaker.force_open()
        with pytest.raises(CircuitOpenError):
            await breaker.call(backend)

        await breaker.reset()

        assert await breaker.call(backend) == "rows"
        assert backend.calls == 1

    @pytest.mark.asyncio
    async def test_stats(self, breaker, backend):
        """Test the statistics snapshot."""
        await fail_times(breaker, backend, 3)
        with pytest.raises(CircuitOpenError):
            await breaker.call(backend)

        stats = breaker.get_stats()

        assert stats["name"] == "cm-prod"
        assert stats["state"] == "open"
        assert stats["total_calls"] == 4
        assert stats["rejected_calls"] == 1
        assert stats["open_count"] == 1
        assert stats["retry_after"] == pytest.approx(30.0)
        assert repr(breaker) == "CircuitBreaker(name='cm-prod', state=open)"


def test_from_config():
    """Test building a breaker from configuration."""
    breaker = CircuitBreaker.from_config(
        "cm-prod", CircuitBreakerConfig(failure_threshold=2, cool_down_seconds=5, enabled=False)
    )

    assert breaker.failure_threshold == 2
    assert breaker.cool_down == 5
    assert breaker.enabled is False
