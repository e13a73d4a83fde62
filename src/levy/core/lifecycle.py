"""Agent lifecycle management: startup with retry, health checks and restarts.

The lifecycle manager owns the health map and the running agent instances.
Each started agent gets a periodic health check; an agent that reports
ERROR for ``unhealthy_threshold`` consecutive checks is restarted (stop,
then start a fresh instance from its factory) until ``max_retries``
restarts have been spent.
"""

import asyncio
import sys
import threading
import time
from collections.abc import Callable
from types import TracebackType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from levy.schemas.messages import HealthRecord
from levy.schemas.types import AgentStatus
from levy.utils.circuit_breaker import CircuitBreakerRegistry
from levy.utils.errors import AgentStartupError, NotFoundError
from levy.utils.telemetry import (
    get_logger,
    record_agent_restart,
    record_health_check,
)

from .agent import BaseAgent
from .bus import CommunicationBus, ResilientBus
from .orchestrator import Orchestrator

# Called as factory(config, bus) and returns a new, uninitialized agent.
AgentFactory = Callable[..., BaseAgent]


class AgentConfig(BaseModel):
    """Registration record for a managed agent. Times are in seconds."""

    agent_id: str
    agent_type: str | None = None
    factory: AgentFactory | None = Field(
        default=None, description="Builds the agent; falls back to the manager's catalog"
    )
    capabilities: list[str] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    health_check_interval: float = Field(default=60.0, gt=0)
    retry_delay: float = Field(default=5.0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    unhealthy_threshold: int = Field(default=3, ge=1)
    auto_restart: bool = True

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def resolved_type(self) -> str:
        return self.agent_type or self.agent_id


class ProcessSafetyNet:
    """Process-wide handlers that log uncaught errors instead of exiting.

    Installation is reference counted so several managers can share one
    process; the previous hooks come back when the last user detaches.
    """

    def __init__(self) -> None:
        self._users = 0
        self._previous_excepthook: Callable[..., Any] | None = None
        self._previous_thread_hook: Callable[..., Any] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_loop_handler: Any = None
        self.uncaught_count = 0
        self._logger = get_logger("levy.safety_net")

    @property
    def installed(self) -> bool:
        return self._users > 0

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._users += 1
        if self._users > 1:
            return

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._handle_uncaught
        self._previous_thread_hook = threading.excepthook
        threading.excepthook = self._handle_thread_exception

        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        if loop is not None:
            self._loop = loop
            self._previous_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self._handle_loop_exception)

        self._logger.info("Process safety net installed")

    def detach(self) -> None:
        if self._users == 0:
            return
        self._users -= 1
        if self._users > 0:
            return

        if sys.excepthook == self._handle_uncaught and self._previous_excepthook:
            sys.excepthook = self._previous_excepthook
        if (
            threading.excepthook == self._handle_thread_exception
            and self._previous_thread_hook
        ):
            threading.excepthook = self._previous_thread_hook
        if self._loop is not None and not self._loop.is_closed():
            self._loop.set_exception_handler(self._previous_loop_handler)
        self._loop = None
        self._previous_loop_handler = None
        self._previous_excepthook = None
        self._previous_thread_hook = None
        self._logger.info("Process safety net detached")

    def _handle_uncaught(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt) and self._previous_excepthook:
            self._previous_excepthook(exc_type, exc, tb)
            return
        self.uncaught_count += 1
        self._logger.error(
            "Uncaught exception",
            error=str(exc),
            error_type=exc_type.__name__,
            exc_info=(exc_type, exc, tb),
        )

    def _handle_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        if issubclass(args.exc_type, SystemExit):
            return
        self.uncaught_count += 1
        self._logger.error(
            "Uncaught exception in thread",
            thread=args.thread.name if args.thread else None,
            error=str(args.exc_value),
            error_type=args.exc_type.__name__,
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    def _handle_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        self.uncaught_count += 1
        exception = context.get("exception")
        self._logger.error(
            "Unhandled exception in event loop",
            message=context.get("message"),
            error=str(exception) if exception else None,
            error_type=type(exception).__name__ if exception else None,
        )


process_safety_net = ProcessSafetyNet()


class AgentLifecycleManager:
    """Starts, monitors and restarts agents.

    Requirements addressed:
    - Startup failures are retried after retry_delay up to max_retries
    - Three consecutive unhealthy checks trigger a full restart
    - Restarts are bounded; an exhausted agent stays down but observable
    - Shutdown disposes the breaker registry and the process safety net
    """

    def __init__(
        self,
        bus: CommunicationBus | ResilientBus,
        registry: CircuitBreakerRegistry | None = None,
        orchestrator: Orchestrator | None = None,
        agent_factories: dict[str, AgentFactory] | None = None,
        safety_net: ProcessSafetyNet | None = None,
    ):
        """Initialize lifecycle manager.

        Args:
            bus: Bus handed to agent factories
            registry: Breaker registry disposed on shutdown
            orchestrator: Orchestrator that started agents are registered with
            agent_factories: Factories by agent type for configs without one
            safety_net: Process safety net (the shared instance by default)
        """
        self.bus = bus
        self.registry = registry
        self.orchestrator = orchestrator
        self.agent_factories = dict(agent_factories or {})
        self.safety_net = safety_net or process_safety_net

        self._configs: dict[str, AgentConfig] = {}
        self._health: dict[str, HealthRecord] = {}
        self._agents: dict[str, BaseAgent] = {}
        self._health_tasks: dict[str, asyncio.Task[None]] = {}
        self._retry_tasks: dict[str, asyncio.Task[None]] = {}
        self._restart_tasks: dict[str, asyncio.Task[None]] = {}
        self._safety_net_attached = False

        self._logger = get_logger("levy.lifecycle")

    def register_agent(self, config: AgentConfig) -> HealthRecord:
        """Store an agent configuration and create its health record."""
        if not self._safety_net_attached:
            self.safety_net.install()
            self._safety_net_attached = True

        self._configs[config.agent_id] = config
        record = HealthRecord(agent_id=config.agent_id, max_retries=config.max_retries)
        self._health[config.agent_id] = record
        self._logger.info(
            "Agent registered with lifecycle manager",
            agent_id=config.agent_id,
            agent_type=config.resolved_type,
            health_check_interval=config.health_check_interval,
            max_retries=config.max_retries,
        )
        return record

    async def start_agent(self, agent_id: str) -> BaseAgent:
        """Build and initialize an agent, then start its health checks.

        On failure a delayed retry is scheduled while restarts remain.

        Raises:
            NotFoundError: If the agent was never registered
            AgentStartupError: If initialization failed; ``fatal`` is set once
                no retries remain
        """
        config = self._require_config(agent_id)
        running = self._agents.get(agent_id)
        if running is not None:
            return running

        health = self._health[agent_id]
        try:
            agent = self._build_agent(config)
            await agent.initialize()
        except Exception as e:
            health.is_healthy = False
            health.status = AgentStatus.ERROR
            health.consecutive_failures += 1
            health.error_count += 1
            health.last_error = str(e)

            attempts = health.consecutive_failures
            if health.retries_exhausted:
                self._logger.error(
                    "Agent startup failed, retries exhausted",
                    agent_id=agent_id,
                    attempts=attempts,
                    error=str(e),
                )
                raise AgentStartupError(agent_id, attempts, str(e), fatal=True) from e

            health.restart_attempts += 1
            self._logger.warning(
                "Agent startup failed, retry scheduled",
                agent_id=agent_id,
                attempts=attempts,
                retry_delay=config.retry_delay,
                error=str(e),
            )
            self._retry_tasks[agent_id] = asyncio.create_task(
                self._retry_start(agent_id, config.retry_delay)
            )
            raise AgentStartupError(agent_id, attempts, str(e)) from e

        self._agents[agent_id] = agent
        health.is_healthy = True
        health.status = agent.status
        health.consecutive_failures = 0
        health.last_check_time = time.time()

        if self.orchestrator is not None:
            self.orchestrator.register_agent(agent, config.resolved_type)

        self._health_tasks[agent_id] = asyncio.create_task(
            self._health_check_loop(agent_id, config.health_check_interval)
        )
        self._logger.info(
            "Agent started", agent_id=agent_id, restart_attempts=health.restart_attempts
        )
        return agent

    async def check_agent_health(self, agent_id: str) -> HealthRecord:
        """Probe an agent's self-reported status and restart it if needed.

        An agent is healthy unless it reports ERROR. Once
        ``unhealthy_threshold`` consecutive checks fail a restart is spawned
        as its own task, while restarts remain.
        """
        config = self._require_config(agent_id)
        health = self._health[agent_id]
        agent = self._agents.get(agent_id)

        if agent is None:
            status = AgentStatus.OFFLINE
            healthy = False
        else:
            status = AgentStatus(agent.get_status()["status"])
            healthy = status != AgentStatus.ERROR

        health.status = status
        health.last_check_time = time.time()
        record_health_check(agent_id, healthy)

        if healthy:
            if not health.is_healthy:
                self._logger.info("Agent healthy again", agent_id=agent_id)
            health.is_healthy = True
            health.consecutive_failures = 0
            return health

        health.is_healthy = False
        health.consecutive_failures += 1
        health.error_count += 1
        self._logger.warning(
            "Agent health check failed",
            agent_id=agent_id,
            status=status.value,
            consecutive_failures=health.consecutive_failures,
        )

        if (
            config.auto_restart
            and health.consecutive_failures >= config.unhealthy_threshold
            and agent_id not in self._restart_tasks
        ):
            if health.retries_exhausted:
                self._logger.error(
                    "Restart limit reached, leaving agent down",
                    agent_id=agent_id,
                    restart_attempts=health.restart_attempts,
                )
            else:
                self._restart_tasks[agent_id] = asyncio.create_task(
                    self._restart(agent_id)
                )
        return health

    async def restart_agent(self, agent_id: str) -> BaseAgent | None:
        """Restart an agent now, counting it against its restart budget.

        Returns:
            The new agent instance, or None if the restart did not succeed
        """
        self._require_config(agent_id)
        await self._restart(agent_id)
        return self._agents.get(agent_id)

    async def stop_agent(self, agent_id: str) -> bool:
        """Stop an agent's health checks and shut it down.

        Returns:
            True if a running agent was stopped
        """
        await self._cancel_task(self._health_tasks.pop(agent_id, None))
        await self._cancel_task(self._retry_tasks.pop(agent_id, None))

        agent = self._agents.pop(agent_id, None)
        health = self._health.get(agent_id)
        if health is not None:
            health.is_healthy = False
            health.status = AgentStatus.OFFLINE
        if agent is None:
            return False

        await agent.shutdown()
        config = self._configs.get(agent_id)
        if self.orchestrator is not None and config is not None:
            key = config.resolved_type
            if self.orchestrator.get_agent(key) is agent:
                self.orchestrator.unregister_agent(key)

        self._logger.info("Agent stopped", agent_id=agent_id)
        return True

    async def stop_all_agents(self) -> None:
        for agent_id in list(self._retry_tasks):
            await self._cancel_task(self._retry_tasks.pop(agent_id, None))
        for agent_id in list(self._agents):
            await self.stop_agent(agent_id)

    async def shutdown(self) -> None:
        """Stop everything, dispose breakers and detach the safety net."""
        self._logger.info("Lifecycle manager shutting down", agents=len(self._agents))
        for agent_id in list(self._restart_tasks):
            await self._cancel_task(self._restart_tasks.pop(agent_id, None))
        await self.stop_all_agents()

        if self.registry is not None:
            self.registry.dispose()
        if self._safety_net_attached:
            self.safety_net.detach()
            self._safety_net_attached = False
        self._logger.info("Lifecycle manager shutdown complete")

    def get_agent(self, agent_id: str) -> BaseAgent | None:
        return self._agents.get(agent_id)

    def get_config(self, agent_id: str) -> AgentConfig | None:
        return self._configs.get(agent_id)

    def get_health(self, agent_id: str) -> HealthRecord:
        if agent_id not in self._health:
            raise NotFoundError("agent", agent_id)
        return self._health[agent_id]

    def get_all_health(self) -> dict[str, dict[str, Any]]:
        return {agent_id: h.model_dump(mode="json") for agent_id, h in self._health.items()}

    def running_agents(self) -> list[str]:
        return list(self._agents)

    def _require_config(self, agent_id: str) -> AgentConfig:
        config = self._configs.get(agent_id)
        if config is None:
            raise NotFoundError("agent", agent_id)
        return config

    def _build_agent(self, config: AgentConfig) -> BaseAgent:
        factory = config.factory or self.agent_factories.get(config.resolved_type)
        if factory is None:
            raise ValueError(f"No factory for agent type '{config.resolved_type}'")
        return factory(config, self.bus)

    async def _restart(self, agent_id: str) -> None:
        health = self._health[agent_id]
        health.restart_attempts += 1
        self._logger.warning(
            "Restarting agent",
            agent_id=agent_id,
            restart_attempts=health.restart_attempts,
            max_retries=health.max_retries,
        )
        try:
            await self.stop_agent(agent_id)
            await self.start_agent(agent_id)
        except AgentStartupError as e:
            record_agent_restart(agent_id, "failure")
            self._logger.error(
                "Agent restart failed", agent_id=agent_id, error=str(e), fatal=e.fatal
            )
        else:
            record_agent_restart(agent_id, "success")
        finally:
            if self._restart_tasks.get(agent_id) is asyncio.current_task():
                self._restart_tasks.pop(agent_id, None)

    async def _retry_start(self, agent_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._retry_tasks.get(agent_id) is asyncio.current_task():
            self._retry_tasks.pop(agent_id, None)
        try:
            await self.start_agent(agent_id)
        except AgentStartupError as e:
            if e.fatal:
                self._logger.error("Agent could not be started", agent_id=agent_id)

    async def _health_check_loop(self, agent_id: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_agent_health(agent_id)
            except Exception as e:
                self._logger.error(
                    "Health check failed to run", agent_id=agent_id, error=str(e)
                )

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
