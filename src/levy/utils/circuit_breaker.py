"""Circuit breaker and per-destination breaker registry.

A breaker isolates a failing destination: after ``failure_threshold``
consecutive failures it opens and rejects calls without invoking them.
Once ``reset_timeout`` has elapsed the next call is let through as a trial
(HALF_OPEN); enough consecutive trial successes close the breaker again and
any trial failure reopens it.

Every state change goes through ``CircuitBreaker._transition``, a
compare-and-set step, so the lazy reset on the call path and the background
stuck-breaker monitor can never both transition the same OPEN period.
"""

import asyncio
import builtins
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from levy.schemas.types import CircuitState
from levy.utils.errors import CircuitOpenError, TimeoutError
from levy.utils.telemetry import (
    MonotonicClock,
    get_logger,
    record_circuit_breaker_rejection,
    record_circuit_breaker_state_change,
)

T = TypeVar("T")

StateChangeListener = Callable[[str, CircuitState, CircuitState], None]

# Multiplier of reset_timeout after which the monitor forces a stuck OPEN
# breaker into HALF_OPEN.
STUCK_OPEN_FACTOR = 3

_UNSET: Any = object()


class CircuitBreakerOptions(BaseModel):
    """Tunable breaker parameters. Times are in seconds."""

    failure_threshold: int = Field(default=3, ge=1)
    reset_timeout: float = Field(default=30.0, gt=0)
    half_open_success_threshold: int = Field(default=2, ge=1)
    monitor_interval: float = Field(default=60.0, gt=0)
    timeout: float | None = Field(
        default=10.0, gt=0, description="Per-call timeout; None disables it"
    )


@dataclass
class CircuitBreakerStats:
    """Point-in-time snapshot of a breaker."""

    name: str
    state: str
    failure_count: int
    success_count: int
    total_calls: int
    total_failures: int
    total_successes: int
    rejected_calls: int
    last_failure_time: float | None
    last_state_change: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CircuitBreaker:
    """Failure-isolation state machine guarding one destination.

    Requirements addressed:
    - CLOSED counts failures; reaching the threshold opens the breaker
    - OPEN rejects without invoking the operation until reset_timeout elapses
    - HALF_OPEN closes after N consecutive successes, reopens on any failure
    - A monitor unsticks breakers left OPEN longer than 3x reset_timeout
    """

    def __init__(
        self,
        name: str,
        options: CircuitBreakerOptions | None = None,
        clock: Callable[[], float] | None = None,
        on_state_change: StateChangeListener | None = None,
    ):
        """Initialize circuit breaker.

        Args:
            name: Breaker name, usually the destination key
            options: Breaker parameters (defaults when omitted)
            clock: Monotonic time source in seconds
            on_state_change: Listener called with (name, old_state, new_state)
        """
        self.name = name
        self.options = options or CircuitBreakerOptions()
        self._clock = clock or MonotonicClock.now

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._total_calls = 0
        self._total_failures = 0
        self._total_successes = 0
        self._rejected_calls = 0
        self._last_failure_time: float | None = None
        self._last_state_change = self._clock()

        self._listeners: list[StateChangeListener] = []
        if on_state_change is not None:
            self._listeners.append(on_state_change)

        self._monitor_task: asyncio.Task[None] | None = None
        self._disposed = False
        self._logger = get_logger("levy.circuit_breaker", breaker=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure_time

    @property
    def last_state_change(self) -> float:
        return self._last_state_change

    def add_listener(self, listener: StateChangeListener) -> None:
        self._listeners.append(listener)

    async def execute(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        timeout: float | None = _UNSET,
        **kwargs: Any,
    ) -> T:
        """Run an async operation through the breaker.

        Args:
            operation: Coroutine function to invoke
            *args: Positional arguments for the operation
            timeout: Per-call timeout override in seconds (None disables)
            **kwargs: Keyword arguments for the operation

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: If the breaker is open; the operation is not invoked
            TimeoutError: If the operation did not settle within the timeout
        """
        self._ensure_monitor()
        self._before_call()

        effective_timeout = self.options.timeout if timeout is _UNSET else timeout
        started = self._clock()
        try:
            if effective_timeout is not None:
                result = await asyncio.wait_for(
                    operation(*args, **kwargs), timeout=effective_timeout
                )
            else:
                result = await operation(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except builtins.TimeoutError as e:
            self._on_failure()
            elapsed_ms = (self._clock() - started) * 1000
            raise TimeoutError(
                f"{self.name} call", (effective_timeout or 0) * 1000, elapsed_ms
            ) from e
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a synchronous function through the breaker (no timeout)."""
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def allows_calls(self) -> bool:
        """Check whether a call made now would be attempted.

        Pure read: an OPEN breaker whose reset_timeout has elapsed reports
        True, but the HALF_OPEN transition only happens on the next call.
        """
        if self._state != CircuitState.OPEN:
            return True
        return self._clock() - self._last_state_change >= self.options.reset_timeout

    def record_success(self) -> None:
        """Record an outcome observed outside ``execute``/``call``."""
        self._on_success()

    def record_failure(self) -> None:
        self._on_failure()

    def check_stuck(self) -> bool:
        """Force a long-open breaker to HALF_OPEN.

        Returns:
            True if this check performed the transition
        """
        if self._state != CircuitState.OPEN:
            return False

        open_for = self._clock() - self._last_state_change
        if open_for <= STUCK_OPEN_FACTOR * self.options.reset_timeout:
            return False

        self._logger.warning(
            "Circuit breaker stuck open, forcing half-open",
            open_for_seconds=round(open_for, 3),
            reset_timeout=self.options.reset_timeout,
        )
        return self._transition(CircuitState.OPEN, CircuitState.HALF_OPEN)

    def reset(self) -> None:
        """Force the breaker back to CLOSED with cleared counters."""
        previous = self._state
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_state_change = self._clock()
        if previous != CircuitState.CLOSED:
            self._announce(previous, CircuitState.CLOSED)
        self._logger.info("Circuit breaker reset", previous_state=previous.value)

    def get_stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self.name,
            state=self._state.value,
            failure_count=self._failure_count,
            success_count=self._success_count,
            total_calls=self._total_calls,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            rejected_calls=self._rejected_calls,
            last_failure_time=self._last_failure_time,
            last_state_change=self._last_state_change,
        )

    def dispose(self) -> None:
        """Stop the background monitor."""
        self._disposed = True
        if self._monitor_task is not None and not self._monitor_task.done():
            self._monitor_task.cancel()
        self._monitor_task = None

    def _before_call(self) -> None:
        if self._state == CircuitState.OPEN:
            if self._clock() - self._last_state_change >= self.options.reset_timeout:
                self._transition(CircuitState.OPEN, CircuitState.HALF_OPEN)
            else:
                self._rejected_calls += 1
                record_circuit_breaker_rejection(self.name)
                raise CircuitOpenError(
                    self.name, self._failure_count, self.options.failure_threshold
                )
        self._total_calls += 1

    def _on_success(self) -> None:
        self._total_successes += 1
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.options.half_open_success_threshold:
                self._transition(CircuitState.HALF_OPEN, CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def _on_failure(self) -> None:
        self._total_failures += 1
        self._last_failure_time = self._clock()
        if self._state == CircuitState.HALF_OPEN:
            self._failure_count += 1
            self._transition(CircuitState.HALF_OPEN, CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self.options.failure_threshold:
                self._transition(CircuitState.CLOSED, CircuitState.OPEN)

    def _transition(self, expected: CircuitState, target: CircuitState) -> bool:
        """Move from ``expected`` to ``target`` if the breaker is still in ``expected``."""
        if self._state != expected:
            return False

        self._state = target
        self._last_state_change = self._clock()
        self._success_count = 0
        if target != CircuitState.OPEN:
            self._failure_count = 0

        log = self._logger.warning if target == CircuitState.OPEN else self._logger.info
        log(
            "Circuit breaker state changed",
            from_state=expected.value,
            to_state=target.value,
            failure_count=self._failure_count,
        )
        self._announce(expected, target)
        return True

    def _announce(self, old: CircuitState, new: CircuitState) -> None:
        record_circuit_breaker_state_change(self.name, old.value, new.value)
        for listener in list(self._listeners):
            try:
                listener(self.name, old, new)
            except Exception as e:
                self._logger.warning(
                    "Circuit breaker listener failed", error=str(e), to_state=new.value
                )

    def _ensure_monitor(self) -> None:
        if self._disposed or self._monitor_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._monitor_task = loop.create_task(self._monitor_loop())

    async def _monitor_loop(self) -> None:
        while not self._disposed:
            await asyncio.sleep(self.options.monitor_interval)
            self.check_stuck()


class CircuitBreakerRegistry:
    """Owns one lazily created breaker per destination key."""

    def __init__(
        self,
        defaults: CircuitBreakerOptions | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.defaults = defaults or CircuitBreakerOptions()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listeners: list[StateChangeListener] = []
        self._logger = get_logger("levy.circuit_breaker.registry")

    def get_breaker(self, key: str, **overrides: Any) -> CircuitBreaker:
        """Return the breaker for ``key``, creating it on first use.

        Args:
            key: Destination key
            **overrides: CircuitBreakerOptions fields replacing the defaults;
                only applied when the breaker is created

        Returns:
            The breaker for ``key``
        """
        breaker = self._breakers.get(key)
        if breaker is None:
            options = (
                self.defaults.model_copy(update=overrides)
                if overrides
                else self.defaults.model_copy()
            )
            breaker = CircuitBreaker(key, options, clock=self._clock)
            for listener in self._listeners:
                breaker.add_listener(listener)
            self._breakers[key] = breaker
            self._logger.debug("Circuit breaker created", breaker=key)
        return breaker

    def has_breaker(self, key: str) -> bool:
        return key in self._breakers

    def find_breaker(self, key: str) -> CircuitBreaker | None:
        """Return the breaker for ``key`` without creating one."""
        return self._breakers.get(key)

    def reset_breaker(self, key: str) -> bool:
        breaker = self._breakers.get(key)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def remove_breaker(self, key: str) -> bool:
        breaker = self._breakers.pop(key, None)
        if breaker is None:
            return False
        breaker.dispose()
        return True

    def get_stats(self, key: str) -> CircuitBreakerStats | None:
        breaker = self._breakers.get(key)
        return breaker.get_stats() if breaker else None

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {key: b.get_stats().to_dict() for key, b in self._breakers.items()}

    def add_listener(self, listener: StateChangeListener) -> None:
        """Attach a state-change listener to existing and future breakers."""
        self._listeners.append(listener)
        for breaker in self._breakers.values():
            breaker.add_listener(listener)

    def dispose(self) -> None:
        """Dispose every breaker and forget them."""
        for breaker in self._breakers.values():
            breaker.dispose()
        self._breakers.clear()
        self._logger.info("Circuit breaker registry disposed")

    def __contains__(self, key: object) -> bool:
        return key in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)
