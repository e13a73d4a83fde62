"""Unit tests for the circuit breaker and breaker registry."""

import asyncio
from unittest.mock import Mock

import pytest

from levy.schemas.types import CircuitState
from levy.utils.circuit_breaker import (
    STUCK_OPEN_FACTOR,
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
)
from levy.utils.errors import CircuitOpenError, TimeoutError


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def succeed() -> str:
    return "ok"


async def fail() -> str:
    raise RuntimeError("downstream failure")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def options() -> CircuitBreakerOptions:
    return CircuitBreakerOptions(
        failure_threshold=3,
        reset_timeout=30.0,
        half_open_success_threshold=2,
        monitor_interval=60.0,
        timeout=None,
    )


@pytest.fixture
def breaker(options: CircuitBreakerOptions, clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker("agent_a", options, clock=clock)


async def trip(breaker: CircuitBreaker, failures: int = 3) -> None:
    for _ in range(failures):
        with pytest.raises(RuntimeError):
            await breaker.execute(fail)


class TestCircuitBreakerOptions:
    """Test breaker option defaults and validation."""

    def test_defaults(self) -> None:
        options = CircuitBreakerOptions()

        assert options.failure_threshold == 3
        assert options.reset_timeout == 30.0
        assert options.half_open_success_threshold == 2
        assert options.monitor_interval == 60.0
        assert options.timeout == 10.0

    def test_rejects_non_positive_threshold(self) -> None:
        with pytest.raises(ValueError):
            CircuitBreakerOptions(failure_threshold=0)


class TestCircuitBreakerStates:
    """Test the CLOSED / OPEN / HALF_OPEN state machine."""

    @pytest.mark.asyncio
    async def test_starts_closed_and_passes_results(self, breaker: CircuitBreaker) -> None:
        assert breaker.is_closed
        assert await breaker.execute(succeed) == "ok"
        assert breaker.get_stats().total_successes == 1

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker: CircuitBreaker) -> None:
        await trip(breaker, failures=2)
        assert breaker.is_closed
        assert breaker.failure_count == 2

        await trip(breaker, failures=1)
        assert breaker.is_open
        assert breaker.failure_count == 3

    @pytest.mark.asyncio
    async def test_success_resets_failure_count_when_closed(
        self, breaker: CircuitBreaker
    ) -> None:
        await trip(breaker, failures=2)
        await breaker.execute(succeed)

        assert breaker.failure_count == 0
        await trip(breaker, failures=2)
        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_open_rejects_without_invoking(self, breaker: CircuitBreaker) -> None:
        """An open breaker fails fast and never calls the operation."""
        await trip(breaker)
        operation = Mock()

        async def tracked() -> None:
            operation()

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(tracked)

        operation.assert_not_called()
        assert exc_info.value.component == "agent_a"
        assert exc_info.value.threshold == 3
        assert breaker.get_stats().rejected_calls == 1

    @pytest.mark.asyncio
    async def test_half_open_after_reset_timeout(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        await trip(breaker)
        clock.advance(29.9)
        assert not breaker.allows_calls()

        clock.advance(0.1)
        assert breaker.allows_calls()
        assert breaker.is_open  # allows_calls does not transition

        assert await breaker.execute(succeed) == "ok"
        assert breaker.is_half_open
        assert breaker.success_count == 1

    @pytest.mark.asyncio
    async def test_half_open_closes_after_success_threshold(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        await trip(breaker)
        clock.advance(30.0)

        await breaker.execute(succeed)
        await breaker.execute(succeed)

        assert breaker.is_closed
        assert breaker.failure_count == 0
        assert breaker.success_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        await trip(breaker)
        clock.advance(30.0)
        await breaker.execute(succeed)

        with pytest.raises(RuntimeError):
            await breaker.execute(fail)

        assert breaker.is_open
        assert breaker.last_state_change == clock.now
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker(
            "slow", CircuitBreakerOptions(failure_threshold=1, timeout=0.01), clock=clock
        )

        async def hang() -> None:
            await asyncio.sleep(1.0)

        with pytest.raises(TimeoutError) as exc_info:
            await breaker.execute(hang)

        assert exc_info.value.timeout_ms == pytest.approx(10.0)
        assert breaker.is_open
        breaker.dispose()

    @pytest.mark.asyncio
    async def test_per_call_timeout_override(self, breaker: CircuitBreaker) -> None:
        async def hang() -> None:
            await asyncio.sleep(1.0)

        with pytest.raises(TimeoutError):
            await breaker.execute(hang, timeout=0.01)
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_not_a_failure(self, breaker: CircuitBreaker) -> None:
        started = asyncio.Event()

        async def hang() -> None:
            started.set()
            await asyncio.sleep(10.0)

        task = asyncio.create_task(breaker.execute(hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breaker.failure_count == 0
        breaker.dispose()

    def test_sync_call(self, breaker: CircuitBreaker) -> None:
        assert breaker.call(lambda x: x * 2, 21) == 42

        def boom() -> None:
            raise ValueError("bad")

        for _ in range(3):
            with pytest.raises(ValueError):
                breaker.call(boom)
        assert breaker.is_open

    def test_reset(self, breaker: CircuitBreaker) -> None:
        for _ in range(3):
            breaker.record_failure()
        assert breaker.is_open

        breaker.reset()

        assert breaker.is_closed
        assert breaker.failure_count == 0


class TestStuckBreakerMonitor:
    """Test forced recovery of breakers left open."""

    def test_check_stuck_waits_for_factor(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        for _ in range(3):
            breaker.record_failure()

        clock.advance(STUCK_OPEN_FACTOR * 30.0)
        assert not breaker.check_stuck()

        clock.advance(0.1)
        assert breaker.check_stuck()
        assert breaker.is_half_open

    def test_check_stuck_and_lazy_reset_transition_once(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        """Only one of the two recovery paths performs the OPEN -> HALF_OPEN step."""
        listener = Mock()
        breaker.add_listener(listener)
        for _ in range(3):
            breaker.record_failure()
        listener.reset_mock()

        clock.advance(STUCK_OPEN_FACTOR * 30.0 + 1)
        assert breaker.check_stuck()
        breaker.call(lambda: None)

        listener.assert_called_once_with(
            "agent_a", CircuitState.OPEN, CircuitState.HALF_OPEN
        )

    def test_check_stuck_ignores_closed(self, breaker: CircuitBreaker) -> None:
        assert not breaker.check_stuck()


class TestStateChangeListeners:
    """Test listener notification."""

    def test_listener_sees_transitions(self, breaker: CircuitBreaker) -> None:
        listener = Mock()
        breaker.add_listener(listener)

        for _ in range(3):
            breaker.record_failure()

        listener.assert_called_once_with("agent_a", CircuitState.CLOSED, CircuitState.OPEN)

    def test_listener_errors_do_not_break_transitions(
        self, breaker: CircuitBreaker
    ) -> None:
        breaker.add_listener(Mock(side_effect=RuntimeError("listener bug")))

        for _ in range(3):
            breaker.record_failure()

        assert breaker.is_open


class TestCircuitBreakerRegistry:
    """Test the per-destination registry."""

    def test_lazy_creation_and_reuse(self, options: CircuitBreakerOptions) -> None:
        registry = CircuitBreakerRegistry(defaults=options)

        assert "agent_a" not in registry
        breaker = registry.get_breaker("agent_a")

        assert registry.get_breaker("agent_a") is breaker
        assert registry.has_breaker("agent_a")
        assert len(registry) == 1
        assert registry.find_breaker("agent_b") is None

    def test_overrides_apply_on_creation(self, options: CircuitBreakerOptions) -> None:
        registry = CircuitBreakerRegistry(defaults=options)

        breaker = registry.get_breaker("agent_a", failure_threshold=5)

        assert breaker.options.failure_threshold == 5
        assert registry.defaults.failure_threshold == 3

    def test_breakers_are_independent(self, options: CircuitBreakerOptions) -> None:
        registry = CircuitBreakerRegistry(defaults=options)
        for _ in range(3):
            registry.get_breaker("agent_a").record_failure()

        assert registry.get_breaker("agent_a").is_open
        assert registry.get_breaker("agent_b").is_closed

    def test_stats_and_reset(self, options: CircuitBreakerOptions) -> None:
        registry = CircuitBreakerRegistry(defaults=options)
        for _ in range(3):
            registry.get_breaker("agent_a").record_failure()

        assert registry.get_stats("agent_a").state == "OPEN"
        assert registry.get_stats("missing") is None
        assert registry.get_all_stats()["agent_a"]["failure_count"] == 3

        assert registry.reset_breaker("agent_a")
        assert not registry.reset_breaker("missing")
        assert registry.get_breaker("agent_a").is_closed

    def test_listener_applies_to_existing_and_future(
        self, options: CircuitBreakerOptions
    ) -> None:
        registry = CircuitBreakerRegistry(defaults=options)
        existing = registry.get_breaker("existing")
        listener = Mock()
        registry.add_listener(listener)
        future = registry.get_breaker("future")

        for _ in range(3):
            existing.record_failure()
            future.record_failure()

        assert listener.call_count == 2

    def test_remove_and_dispose(self, options: CircuitBreakerOptions) -> None:
        registry = CircuitBreakerRegistry(defaults=options)
        registry.get_breaker("a")
        registry.get_breaker("b")

        assert registry.remove_breaker("a")
        assert not registry.remove_breaker("a")

        registry.dispose()
        assert len(registry) == 0
