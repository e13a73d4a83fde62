"""Runtime facade that wires the orchestration stack together.

``AgentRuntime`` owns one instance of each component: the communication
bus, the circuit breaker registry and the resilient bus wrapping it, the
orchestrator, the lifecycle manager and the resilience harness. Agents talk
over the plain bus; the orchestrator and harness send through breakers.
"""

import asyncio
from typing import Any

from levy.agents import AGENT_CATALOG
from levy.config import Config
from levy.core.bus import CommunicationBus, ResilientBus
from levy.core.lifecycle import AgentConfig, AgentFactory, AgentLifecycleManager
from levy.core.orchestrator import Orchestrator
from levy.resilience.harness import ResilienceHarness
from levy.schemas.messages import HealthRecord
from levy.utils.circuit_breaker import CircuitBreakerRegistry
from levy.utils.errors import AgentStartupError
from levy.utils.telemetry import (
    get_logger,
    setup_logging,
    setup_tracing,
    start_metrics_server,
    system_monitor,
    update_active_agents_count,
)


class AgentRuntime:
    """Owns and drives the bus, orchestrator, lifecycle manager and harness.

    Requirements addressed:
    - Components are explicitly owned; nothing is a process-wide singleton
    - Agent registration applies lifecycle defaults from configuration
    - System health combines orchestrator, agent, breaker and process state
    """

    def __init__(
        self,
        config: Config | None = None,
        agent_factories: dict[str, AgentFactory] | None = None,
    ):
        self.config = config or Config()
        features = self.config.features

        self.bus = CommunicationBus(history_size=self.config.bus.history_size)
        self.registry = CircuitBreakerRegistry(defaults=self.config.circuit_breaker)
        self.resilient_bus = ResilientBus(
            self.bus,
            self.registry,
            source_id=self.config.orchestrator.orchestrator_id,
        )
        self.orchestrator = Orchestrator(
            self.resilient_bus if features.circuit_breakers else self.bus,
            self.config.orchestrator,
            breakers=self.registry,
        )
        self.lifecycle = AgentLifecycleManager(
            self.bus,
            registry=self.registry,
            orchestrator=self.orchestrator,
            agent_factories={**AGENT_CATALOG, **(agent_factories or {})},
        )
        self.harness = ResilienceHarness(self.lifecycle, self.resilient_bus)

        self._health_task: asyncio.Task[None] | None = None
        self._running = False
        self._logger = get_logger("levy.runtime")

    @property
    def is_running(self) -> bool:
        return self._running

    def configure_telemetry(self) -> None:
        """Apply logging, metrics and tracing settings from configuration."""
        features = self.config.features
        if features.structured_logging:
            setup_logging(
                self.config.logging.level,
                enable_pii_redaction=(
                    self.config.logging.enable_pii_redaction and features.pii_redaction
                ),
                log_format=self.config.logging.format,
            )
        if self.config.metrics.enabled and features.metrics_export:
            start_metrics_server(self.config.metrics.port)
        if self.config.metrics.tracing_enabled and features.telemetry:
            setup_tracing(otlp_endpoint=self.config.metrics.otlp_endpoint)

    async def start(self) -> None:
        """Start the orchestrator, every registered agent and health logging."""
        if self._running:
            return

        await self.orchestrator.start()
        self._running = True
        for agent_id in list(self._registered_ids()):
            await self._start_agent(agent_id)

        self._health_task = asyncio.create_task(self._health_log_loop())
        self._logger.info(
            "Runtime started",
            agents=len(self.lifecycle.running_agents()),
            environment=self.config.environment,
        )

    async def shutdown(self) -> None:
        """Stop tests, the orchestrator and agents, then release the bus."""
        if not self._running:
            return

        self._logger.info("Runtime shutting down")
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        await self.harness.dispose()
        await self.orchestrator.shutdown()
        await self.lifecycle.shutdown()
        await self.bus.close()
        self._running = False
        self._logger.info("Runtime shutdown complete")

    async def register_agent(
        self, config: AgentConfig | dict[str, Any]
    ) -> HealthRecord:
        """Register an agent, filling unset lifecycle fields from configuration.

        The agent is started at once when the runtime is running.
        """
        if isinstance(config, dict):
            config = AgentConfig(**config)

        defaults = {
            key: value
            for key, value in self.config.lifecycle.model_dump().items()
            if key not in config.model_fields_set
        }
        if not self.config.features.auto_restart:
            defaults["auto_restart"] = False
        config = config.model_copy(update=defaults)

        record = self.lifecycle.register_agent(config)
        if self._running:
            await self._start_agent(config.agent_id)
        return record

    def get_system_health(self) -> dict[str, Any]:
        """Snapshot of orchestrator status, agent health, breakers and process."""
        agents = self.lifecycle.get_all_health()
        breakers = self.registry.get_all_stats()
        healthy = all(record["is_healthy"] for record in agents.values()) and all(
            stats["state"] == "CLOSED" for stats in breakers.values()
        )
        return {
            "healthy": healthy,
            "orchestrator": self.orchestrator.get_system_status(),
            "agents": agents,
            "circuit_breakers": breakers,
            "active_faults": self.resilient_bus.active_faults(),
            "bus": self.bus.get_stats(),
            "uncaught_errors": self.lifecycle.safety_net.uncaught_count,
            "resources": system_monitor.get_system_stats(),
        }

    async def __aenter__(self) -> "AgentRuntime":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.shutdown()

    def _registered_ids(self) -> list[str]:
        return list(self.lifecycle.get_all_health())

    async def _start_agent(self, agent_id: str) -> None:
        try:
            await self.lifecycle.start_agent(agent_id)
        except AgentStartupError as e:
            # Non-fatal failures already have a retry scheduled
            self._logger.error(
                "Agent failed to start", agent_id=agent_id, error=str(e), fatal=e.fatal
            )

    async def _health_log_loop(self) -> None:
        interval = self.config.resilience.health_log_interval
        while True:
            await asyncio.sleep(interval)
            health = self.get_system_health()
            update_active_agents_count(len(self.lifecycle.running_agents()))
            system_monitor.record_memory_usage("runtime")
            log = self._logger.info if health["healthy"] else self._logger.warning
            log(
                "System health",
                healthy=health["healthy"],
                agents=len(health["agents"]),
                open_breakers=[
                    name
                    for name, stats in health["circuit_breakers"].items()
                    if stats["state"] != "CLOSED"
                ],
                queue_depth=health["orchestrator"]["queue_depth"],
            )
