"""Fault injection harness that verifies agents recover within bounded time.

A test injects one kind of fault against a managed agent for up to
``duration`` seconds, records per-iteration outcomes and latencies, then
polls the agent's health record and circuit breaker until the agent is READY
and healthy with its breaker CLOSED again, or the recovery window expires.
"""

import asyncio
import random
import time
import uuid
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from levy.core.agent import BaseAgent
from levy.core.bus import FaultKind, ResilientBus
from levy.core.lifecycle import AgentLifecycleManager
from levy.core.protocol import create_message
from levy.schemas.messages import MessageEnvelope
from levy.schemas.types import AgentStatus, MessageType
from levy.utils.errors import NotFoundError
from levy.utils.telemetry import MonotonicClock, SystemMonitor, get_logger, system_monitor

HARNESS_ID = "resilience_harness"

# Ballast added per memory-leak iteration, multiplied by load_factor
_LEAK_CHUNK_BYTES = 64 * 1024
_LEAK_CAP_BYTES = 256 * 1024 * 1024


class FailureType(str, Enum):
    """Fault routines the harness can run."""

    TIMEOUT = "timeout"
    ERROR = "error"
    AGENT_CRASH = "agent_crash"
    HIGH_LOAD = "high_load"
    MEMORY_LEAK = "memory_leak"
    NETWORK_PARTITION = "network_partition"


class FaultTestOptions(BaseModel):
    """Validated options for one resilience test. Times are in seconds."""

    target_agent_id: str = Field(..., min_length=1)
    failure_type: FailureType
    failure_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    failure_count: int = Field(default=10, ge=1, le=1000)
    delay_between_failures: float = Field(default=1.0, ge=0.0, le=60.0)
    load_factor: int = Field(default=5, ge=1, le=100)
    duration: float = Field(default=60.0, gt=0.0, le=3600.0)
    probe_timeout: float | None = Field(
        default=None, gt=0.0, description="Per-probe timeout; breaker default when unset"
    )
    recovery_timeout: float = Field(default=30.0, gt=0.0, le=600.0)
    recovery_poll_interval: float = Field(default=1.0, gt=0.0, le=60.0)
    seed: int | None = Field(default=None, description="Seed for failure_rate draws")

    model_config = ConfigDict(extra="forbid")


class FaultTestResult(BaseModel):
    """Outcome of a resilience test, updated while the test runs."""

    test_id: str
    options: FaultTestOptions
    status: Literal["running", "completed", "stopped", "failed"] = "running"
    started_at: float = Field(default_factory=time.time)
    ended_at: float | None = None
    iterations: int = 0
    successes: int = 0
    failures: int = 0
    latencies_ms: list[float] = Field(default_factory=list)
    cpu_samples: list[float] = Field(default_factory=list)
    memory_samples: list[float] = Field(default_factory=list)
    replies_received: int = 0
    circuit_tripped: bool = False
    initial_health: dict[str, Any] | None = None
    initial_circuit: dict[str, Any] | None = None
    final_health: dict[str, Any] | None = None
    final_circuit: dict[str, Any] | None = None
    recovered: bool | None = None
    recovery_time: float | None = Field(
        default=None, description="Seconds from end of injection to recovery"
    )
    agent_restarted: bool = False
    restart_attempts_delta: int = 0
    errors: list[str] = Field(default_factory=list)


class ResilienceHarness:
    """Runs fault-injection tests against agents managed by a lifecycle manager."""

    def __init__(
        self,
        lifecycle: AgentLifecycleManager,
        bus: ResilientBus,
        monitor: SystemMonitor | None = None,
    ):
        self.lifecycle = lifecycle
        self.bus = bus
        self.registry = bus.registry
        self.monitor = monitor or system_monitor

        self._results: dict[str, FaultTestResult] = {}
        self._runners: dict[str, asyncio.Task[None]] = {}
        self._hard_stops: dict[str, asyncio.TimerHandle] = {}
        self._stop_events: dict[str, asyncio.Event] = {}
        self._stopped_early: set[str] = set()
        self._replies: dict[str, int] = {}
        self._probes: dict[str, str] = {}
        self._subscription = bus.subscribe(HARNESS_ID, self._on_reply, HARNESS_ID)

        self._routines: dict[
            FailureType, Callable[[FaultTestResult, random.Random], Awaitable[None]]
        ] = {
            FailureType.TIMEOUT: self._run_timeout_storm,
            FailureType.ERROR: self._run_error_storm,
            FailureType.AGENT_CRASH: self._run_agent_crash,
            FailureType.HIGH_LOAD: self._run_high_load,
            FailureType.MEMORY_LEAK: self._run_memory_leak,
            FailureType.NETWORK_PARTITION: self._run_network_partition,
        }
        self._logger = get_logger("levy.resilience")

    async def run_test(self, options: FaultTestOptions | dict[str, Any]) -> str:
        """Start a test in the background.

        Args:
            options: Test options (dicts are validated)

        Returns:
            Test id for ``get_test_result`` / ``stop_test``

        Raises:
            pydantic.ValidationError: If the options are invalid
            NotFoundError: If the target agent is not managed
        """
        if not isinstance(options, FaultTestOptions):
            options = FaultTestOptions.model_validate(options)
        self.lifecycle.get_health(options.target_agent_id)

        test_id = f"test_{uuid.uuid4().hex[:12]}"
        result = FaultTestResult(test_id=test_id, options=options)
        self._results[test_id] = result
        self._stop_events[test_id] = asyncio.Event()
        self._replies[test_id] = 0

        loop = asyncio.get_running_loop()
        self._hard_stops[test_id] = loop.call_later(
            options.duration, self._stop_injection, test_id
        )
        self._runners[test_id] = asyncio.create_task(self._execute(test_id))

        self._logger.info(
            "Resilience test started",
            test_id=test_id,
            failure_type=options.failure_type.value,
            target_agent_id=options.target_agent_id,
            duration=options.duration,
        )
        return test_id

    def stop_test(self, test_id: str) -> bool:
        """End fault injection early; recovery is still verified.

        Returns:
            False if the test is unknown or already finished injecting
        """
        handle = self._hard_stops.pop(test_id, None)
        if handle is None:
            self._logger.warning("No active test to stop", test_id=test_id)
            return False
        handle.cancel()
        self._stopped_early.add(test_id)
        self._stop_events[test_id].set()
        self._logger.info("Resilience test stopped", test_id=test_id)
        return True

    def get_test_result(self, test_id: str) -> FaultTestResult | None:
        return self._results.get(test_id)

    def get_all_test_results(self) -> list[FaultTestResult]:
        return list(self._results.values())

    async def wait_for_test(
        self, test_id: str, timeout: float | None = None
    ) -> FaultTestResult:
        """Wait for a test, including recovery verification, to finish.

        Raises:
            NotFoundError: If the test id is unknown
        """
        result = self._results.get(test_id)
        if result is None:
            raise NotFoundError("test", test_id)
        runner = self._runners.get(test_id)
        if runner is not None:
            await asyncio.wait_for(asyncio.shield(runner), timeout=timeout)
        return result

    async def verify_recovery(self, test_id: str) -> bool:
        """Poll the target until it is READY, healthy and its breaker CLOSED.

        An OPEN breaker whose reset timeout has passed is probed so that the
        trial calls can close it.
        """
        result = self._results[test_id]
        options = result.options
        target = options.target_agent_id
        initial_restarts = (result.initial_health or {}).get("restart_attempts", 0)

        started = MonotonicClock.now()
        deadline = started + options.recovery_timeout
        recovered = False

        while True:
            breaker = self.registry.find_breaker(target)
            if breaker is not None and not breaker.is_closed:
                result.circuit_tripped = True
                while breaker.allows_calls() and not breaker.is_closed:
                    if not (await self._probe(test_id, target))[0]:
                        break

            health = self.lifecycle.get_health(target)
            agent = self.lifecycle.get_agent(target)
            recovered = (
                agent is not None
                and agent.status == AgentStatus.READY
                and health.is_healthy
                and (breaker is None or breaker.is_closed)
            )
            if recovered or MonotonicClock.now() >= deadline:
                break
            await asyncio.sleep(options.recovery_poll_interval)

        health = self.lifecycle.get_health(target)
        result.recovered = recovered
        result.recovery_time = (
            round(MonotonicClock.now() - started, 3) if recovered else None
        )
        result.restart_attempts_delta = health.restart_attempts - initial_restarts
        result.agent_restarted = result.restart_attempts_delta > 0
        result.final_health = health.model_dump(mode="json")
        stats = self.registry.get_stats(target)
        result.final_circuit = stats.to_dict() if stats else None

        log = self._logger.info if recovered else self._logger.error
        log(
            "Recovery verification finished",
            test_id=test_id,
            target_agent_id=target,
            recovered=recovered,
            recovery_time=result.recovery_time,
            agent_restarted=result.agent_restarted,
        )
        return recovered

    async def dispose(self) -> None:
        """Cancel running tests and detach from the bus."""
        for test_id in list(self._hard_stops):
            self.stop_test(test_id)
        for runner in self._runners.values():
            runner.cancel()
        for runner in self._runners.values():
            try:
                await runner
            except asyncio.CancelledError:
                pass
        self._runners.clear()
        self._subscription.unsubscribe()

    async def _execute(self, test_id: str) -> None:
        result = self._results[test_id]
        options = result.options
        target = options.target_agent_id

        result.initial_health = self.lifecycle.get_health(target).model_dump(mode="json")
        stats = self.registry.get_stats(target)
        result.initial_circuit = stats.to_dict() if stats else None

        rng = random.Random(options.seed)
        try:
            await self._routines[options.failure_type](result, rng)
            self._stop_injection(test_id)
            await self.verify_recovery(test_id)
            result.status = "stopped" if test_id in self._stopped_early else "completed"
        except asyncio.CancelledError:
            result.status = "stopped"
            raise
        except Exception as e:
            result.status = "failed"
            result.errors.append(f"{type(e).__name__}: {e}")
            self._logger.error(
                "Resilience test failed",
                test_id=test_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            self._stop_injection(test_id)
            self.bus.clear_fault(target)
            result.replies_received = self._replies.get(test_id, 0)
            self._probes = {
                probe_id: owner
                for probe_id, owner in self._probes.items()
                if owner != test_id
            }
            result.ended_at = time.time()

    def _stop_injection(self, test_id: str) -> None:
        handle = self._hard_stops.pop(test_id, None)
        if handle is not None:
            handle.cancel()
        event = self._stop_events.get(test_id)
        if event is not None:
            event.set()

    def _injecting(self, test_id: str) -> bool:
        return not self._stop_events[test_id].is_set()

    async def _pause(self, test_id: str, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_events[test_id].wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _probe(
        self, test_id: str, target: str, timeout: float | None = None
    ) -> tuple[bool, float]:
        """Send a heartbeat through the target's breaker.

        Returns:
            (success, latency in milliseconds)
        """
        message = create_message(
            HARNESS_ID, target, MessageType.HEARTBEAT, {"test_id": test_id, "probe": True}
        )
        self._probes[message.id] = test_id
        started = MonotonicClock.now()
        if timeout is None:
            outcome = await self.bus.send(message)
        else:
            outcome = await self.bus.send(message, timeout=timeout)
        return outcome.success, (MonotonicClock.now() - started) * 1000

    def _record(self, result: FaultTestResult, ok: bool, latency_ms: float) -> None:
        result.iterations += 1
        result.latencies_ms.append(round(latency_ms, 3))
        if ok:
            result.successes += 1
        else:
            result.failures += 1
        breaker = self.registry.find_breaker(result.options.target_agent_id)
        if breaker is not None and breaker.is_open:
            result.circuit_tripped = True

    async def _run_fault_storm(
        self, result: FaultTestResult, rng: random.Random, kind: FaultKind
    ) -> None:
        options = result.options
        target = options.target_agent_id
        timeout = options.probe_timeout or (
            self.registry.get_breaker(target).options.timeout or 1.0
        )

        for i in range(options.failure_count):
            if not self._injecting(result.test_id):
                break
            if i:
                await self._pause(result.test_id, options.delay_between_failures)

            inject = rng.random() < options.failure_rate
            if inject:
                self.bus.inject_fault(target, kind, delay=timeout * 2)
            try:
                ok, latency = await self._probe(result.test_id, target, timeout=timeout)
            finally:
                if inject:
                    self.bus.clear_fault(target)
            self._record(result, ok, latency)

    async def _run_timeout_storm(
        self, result: FaultTestResult, rng: random.Random
    ) -> None:
        await self._run_fault_storm(result, rng, FaultKind.TIMEOUT)

    async def _run_error_storm(self, result: FaultTestResult, rng: random.Random) -> None:
        await self._run_fault_storm(result, rng, FaultKind.ERROR)

    async def _run_network_partition(
        self, result: FaultTestResult, rng: random.Random
    ) -> None:
        options = result.options
        target = options.target_agent_id
        self.bus.inject_fault(target, FaultKind.PARTITION)
        try:
            for i in range(options.failure_count):
                if not self._injecting(result.test_id):
                    break
                if i:
                    await self._pause(result.test_id, options.delay_between_failures)
                ok, latency = await self._probe(result.test_id, target)
                self._record(result, ok, latency)
        finally:
            self.bus.clear_fault(target)

    async def _run_agent_crash(self, result: FaultTestResult, rng: random.Random) -> None:
        options = result.options
        target = options.target_agent_id

        for i in range(options.failure_count):
            if not self._injecting(result.test_id):
                break
            if i:
                await self._wait_until_ready(target, options.recovery_timeout)
                await self._pause(result.test_id, options.delay_between_failures)

            agent = self.lifecycle.get_agent(target)
            if agent is None:
                result.errors.append(f"Agent {target} not running at iteration {i + 1}")
                break
            started = MonotonicClock.now()
            agent.crash(f"injected crash {i + 1}/{options.failure_count}")
            self._record(result, False, (MonotonicClock.now() - started) * 1000)
            self._logger.info(
                "Injected agent crash",
                test_id=result.test_id,
                target_agent_id=target,
                iteration=i + 1,
            )
            await self._detect_crash(target, agent)

    async def _detect_crash(self, target: str, crashed: BaseAgent) -> None:
        """Run health checks until the lifecycle manager reacts to a crash.

        Periodic checks may be minutes apart, so the harness performs up to
        ``unhealthy_threshold`` checks itself; the restart that follows is
        still the lifecycle manager's.
        """
        config = self.lifecycle.get_config(target)
        if config is None:
            return
        for _ in range(config.unhealthy_threshold):
            if self.lifecycle.get_agent(target) is not crashed:
                return
            health = await self.lifecycle.check_agent_health(target)
            if health.is_healthy:
                return

    async def _run_high_load(self, result: FaultTestResult, rng: random.Random) -> None:
        options = result.options
        target = options.target_agent_id
        self.monitor.record_cpu_usage("resilience_test")

        for i in range(options.failure_count):
            if not self._injecting(result.test_id):
                break
            if i:
                await self._pause(result.test_id, options.delay_between_failures)
            outcomes = await asyncio.gather(
                *(
                    self._probe(result.test_id, target)
                    for _ in range(options.load_factor)
                )
            )
            for ok, latency in outcomes:
                self._record(result, ok, latency)
            result.cpu_samples.append(self.monitor.record_cpu_usage("resilience_test"))

    async def _run_memory_leak(self, result: FaultTestResult, rng: random.Random) -> None:
        options = result.options
        target = options.target_agent_id
        ballast: list[bytearray] = []
        held = 0
        chunk = _LEAK_CHUNK_BYTES * options.load_factor

        try:
            for i in range(options.failure_count):
                if not self._injecting(result.test_id):
                    break
                if i:
                    await self._pause(result.test_id, options.delay_between_failures)
                if held + chunk <= _LEAK_CAP_BYTES:
                    ballast.append(bytearray(chunk))
                    held += chunk
                result.memory_samples.append(
                    self.monitor.record_memory_usage("resilience_test")
                )
                ok, latency = await self._probe(result.test_id, target)
                self._record(result, ok, latency)
        finally:
            ballast.clear()

    async def _wait_until_ready(self, agent_id: str, timeout: float) -> bool:
        deadline = MonotonicClock.now() + timeout
        while MonotonicClock.now() < deadline:
            agent = self.lifecycle.get_agent(agent_id)
            if agent is not None and agent.status == AgentStatus.READY:
                return True
            await asyncio.sleep(0.01)
        return False

    def _on_reply(self, message: MessageEnvelope) -> None:
        test_id = self._probes.pop(message.correlation_id or "", None)
        if test_id in self._replies:
            self._replies[test_id] += 1
