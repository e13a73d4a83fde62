"""Base agent: lifecycle, message dispatch and the task execution hook.

Concrete agents (validation, valuation, ...) subclass ``BaseAgent`` and
implement ``execute_task``. Everything else, including replying to the
orchestrator, status reporting and cooperative cancellation, lives here.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from levy.schemas.messages import MessageEnvelope, Task
from levy.schemas.types import (
    BROADCAST,
    AgentStatus,
    AgentType,
    MessageType,
    Priority,
    StatusCode,
    TaskStatus,
)
from levy.utils.errors import (
    AgentExecutionError,
    CapabilityError,
    InvalidStateError,
    NotFoundError,
    OrchestrationError,
)
from levy.utils.telemetry import (
    MonotonicClock,
    async_performance_timer,
    get_logger,
)

from .bus import CommunicationBus, ResilientBus, SendResult, Subscription
from .protocol import create_error_response, create_message, create_response

# Statuses in which an agent accepts new task requests
_ACCEPTING_STATUSES = frozenset(
    {AgentStatus.READY, AgentStatus.BUSY, AgentStatus.DEGRADED}
)

MessageDispatch = Callable[[MessageEnvelope], Awaitable[None]]


class BaseAgent(ABC):
    """Abstract base class for bus-connected agents.

    Lifecycle: OFFLINE -> INITIALIZING -> READY <-> BUSY/DEGRADED ->
    SHUTTING_DOWN -> OFFLINE, with ERROR reachable from any active state.

    Requirements addressed:
    - Subscribes under its own id and under 'broadcast'
    - Registers with the orchestrator and broadcasts its status periodically
    - Converts execute_task results and exceptions into TASK_RESPONSE messages
    - Never lets a task failure crash the agent
    """

    def __init__(
        self,
        agent_id: str,
        bus: CommunicationBus | ResilientBus,
        capabilities: Iterable[str] = (),
        *,
        agent_type: str | None = None,
        orchestrator_id: str = AgentType.MCP.value,
        status_interval: float = 30.0,
        settings: dict[str, Any] | None = None,
    ):
        """Initialize agent.

        Args:
            agent_id: Bus address of the agent
            bus: Bus used for subscriptions and sends
            capabilities: Capability names advertised to the orchestrator
            agent_type: Agent type (defaults to agent_id)
            orchestrator_id: Bus address of the orchestrator
            status_interval: Seconds between status broadcasts
            settings: Free-form agent settings
        """
        self.agent_id = agent_id
        self.agent_type = agent_type or agent_id
        self.bus = bus
        self.capabilities = frozenset(capabilities)
        self.orchestrator_id = orchestrator_id
        self.status_interval = status_interval
        self.settings = dict(settings or {})

        self.status = AgentStatus.OFFLINE
        self._tasks: dict[str, Task] = {}
        self._cancel_requested: set[str] = set()
        self._active_task_count = 0
        self._subscriptions: list[Subscription] = []
        self._status_task: asyncio.Task[None] | None = None
        self._shutdown_event = asyncio.Event()

        self._started_at: float | None = None
        self._last_activity: float | None = None
        self._error_count = 0
        self._last_error: str | None = None
        self._degraded_reason: str | None = None

        self._message_handlers: dict[MessageType, MessageDispatch] = {
            MessageType.TASK_REQUEST: self._handle_task_request,
            MessageType.TASK_CANCEL: self._handle_task_cancel,
            MessageType.STATUS_UPDATE: self._handle_status_update,
            MessageType.HEARTBEAT: self._handle_heartbeat,
            MessageType.SHUTDOWN: self._handle_shutdown,
        }

        self._logger = get_logger("levy.agent", agent_id=agent_id)

    @abstractmethod
    async def execute_task(self, task: Task) -> Any:
        """Execute a task and return a serializable result.

        Raising any exception marks the task FAILED; the agent keeps running.
        Long-running implementations should check ``is_cancelled`` at their
        checkpoints.

        Args:
            task: Task to execute (status PROCESSING)

        Returns:
            Serializable task result
        """

    async def on_initialize(self) -> None:
        """Hook run before the agent subscribes. Raise to abort startup."""

    async def on_shutdown(self) -> None:
        """Hook run after subscriptions and tasks have been released."""

    async def handle_specialized_message(self, message: MessageEnvelope) -> None:
        """Hook for message types the base agent does not handle."""
        self._logger.debug(
            "Ignoring unhandled message type",
            message_type=message.type.value,
            source=message.source,
        )

    async def initialize(self) -> None:
        """Bring the agent online.

        Raises:
            InvalidStateError: If the agent is not OFFLINE
        """
        if self.status != AgentStatus.OFFLINE:
            raise InvalidStateError(
                f"agent {self.agent_id}", self.status.value, "initialize"
            )

        self.status = AgentStatus.INITIALIZING
        self._shutdown_event.clear()
        self._logger.info("Initializing agent", agent_type=self.agent_type)

        try:
            await self.on_initialize()
        except Exception as e:
            self.status = AgentStatus.ERROR
            self._record_error(str(e))
            self._logger.error("Agent initialization failed", error=str(e))
            raise

        self._subscriptions = [
            self.bus.subscribe(self.agent_id, self.handle_message, self.agent_id),
            self.bus.subscribe(BROADCAST, self.handle_message, self.agent_id),
        ]
        self.status = AgentStatus.READY
        self._started_at = MonotonicClock.now()
        self._last_activity = time.time()

        await self.send(
            self.orchestrator_id,
            MessageType.AGENT_REGISTRATION,
            {
                "agent_id": self.agent_id,
                "agent_type": self.agent_type,
                "capabilities": sorted(self.capabilities),
                "status": self.status.value,
            },
            priority=Priority.HIGH,
        )

        self._status_task = asyncio.create_task(self._status_broadcast_loop())
        self._logger.info("Agent ready", capabilities=sorted(self.capabilities))

    async def shutdown(self) -> None:
        """Take the agent offline, cancelling its unfinished tasks."""
        if self.status in (AgentStatus.OFFLINE, AgentStatus.SHUTTING_DOWN):
            return

        self._logger.info("Shutting down agent", previous_status=self.status.value)
        self.status = AgentStatus.SHUTTING_DOWN
        self._shutdown_event.set()

        if self._status_task:
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass
            finally:
                self._status_task = None

        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        cancelled = 0
        for task in self._tasks.values():
            if not task.is_terminal:
                self._cancel_requested.add(task.id)
                task.transition_to(TaskStatus.CANCELLED)
                cancelled += 1

        try:
            await self.on_shutdown()
        finally:
            self.status = AgentStatus.OFFLINE
            self._logger.info("Agent offline", cancelled_tasks=cancelled)

    async def handle_message(self, message: MessageEnvelope) -> None:
        """Dispatch an inbound message by type.

        Errors raised while handling are logged and, when the sender asked for
        a response, answered with an ERROR message.
        """
        self._last_activity = time.time()
        handler = self._message_handlers.get(message.type)

        try:
            if handler is not None:
                await handler(message)
            else:
                await self.handle_specialized_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_error(str(e))
            self._logger.error(
                "Failed to handle message",
                message_id=message.id,
                message_type=message.type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            if message.requires_response:
                await self._reply(create_error_response(message, e, source=self.agent_id))

    def get_status(self) -> dict[str, Any]:
        """Aggregate task counts and uptime into a status report."""
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        counts["total"] = len(self._tasks)

        uptime = 0.0
        if self._started_at is not None and self.status != AgentStatus.OFFLINE:
            uptime = MonotonicClock.now() - self._started_at

        return {
            "agent_id": self.agent_id,
            "agent_type": self.agent_type,
            "status": self.status.value,
            "capabilities": sorted(self.capabilities),
            "tasks": counts,
            "active_tasks": self._active_task_count,
            "uptime_seconds": round(uptime, 3),
            "last_activity": self._last_activity,
            "error_count": self._error_count,
            "last_error": self._last_error,
            "degraded_reason": self._degraded_reason,
        }

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def is_cancelled(self, task_id: str) -> bool:
        """Cooperative cancellation checkpoint for ``execute_task``."""
        return task_id in self._cancel_requested

    def has_capability(self, capability: str) -> bool:
        return capability in self.capabilities

    def require_capability(self, capability: str) -> None:
        if capability not in self.capabilities:
            raise CapabilityError(self.agent_id, capability)

    def crash(self, reason: str = "crashed") -> None:
        """Put the agent in ERROR; only a restart brings it back."""
        self._record_error(reason)
        self.status = AgentStatus.ERROR
        self._logger.error("Agent entered error state", reason=reason)

    def set_degraded(self, reason: str) -> None:
        if self.status in (AgentStatus.READY, AgentStatus.BUSY):
            self.status = AgentStatus.DEGRADED
        self._degraded_reason = reason
        self._logger.warning("Agent degraded", reason=reason)

    def clear_degraded(self) -> None:
        self._degraded_reason = None
        if self.status == AgentStatus.DEGRADED:
            self.status = (
                AgentStatus.BUSY if self._active_task_count else AgentStatus.READY
            )

    async def send(
        self,
        destination: str,
        message_type: MessageType,
        payload: dict[str, Any] | None = None,
        *,
        priority: Priority = Priority.MEDIUM,
        correlation_id: str | None = None,
        requires_response: bool = False,
    ) -> SendResult:
        """Send a message from this agent."""
        message = create_message(
            self.agent_id,
            destination,
            message_type,
            payload,
            priority=priority,
            correlation_id=correlation_id,
            requires_response=requires_response,
        )
        return await self._reply(message)

    async def _reply(self, message: MessageEnvelope) -> SendResult:
        result = await self.bus.send(message)
        if not result.success:
            self._logger.debug(
                "Send from agent failed",
                message_id=message.id,
                destination=message.destination,
                message_type=message.type.value,
                error=result.error,
                circuit_open=result.circuit_open,
            )
        return result

    def _record_error(self, error: str) -> None:
        self._error_count += 1
        self._last_error = error

    async def _handle_task_request(self, message: MessageEnvelope) -> None:
        payload = message.payload
        task_id = payload.get("task_id")
        if not task_id:
            raise ValueError("task_request payload is missing task_id")

        if self.status not in _ACCEPTING_STATUSES:
            await self._respond_to_task(
                message,
                task_id,
                StatusCode.FAILURE,
                error=f"Agent {self.agent_id} is not accepting tasks ({self.status.value})",
            )
            return

        existing = self._tasks.get(task_id)
        if existing is not None:
            self._logger.warning(
                "Ignoring duplicate task request",
                task_id=task_id,
                task_status=existing.status.value,
            )
            return

        task = Task(
            id=task_id,
            type=payload.get("task_type", "unknown"),
            parameters=dict(payload.get("parameters") or {}),
            priority=message.priority,
        )
        self._tasks[task_id] = task
        self._task_started()

        try:
            task.transition_to(TaskStatus.PROCESSING)
            await self.send(
                message.source,
                MessageType.TASK_UPDATE,
                {"task_id": task_id, "status": TaskStatus.PROCESSING.value},
                priority=message.priority,
                correlation_id=message.id,
            )

            result: Any = None
            error: AgentExecutionError | None = None
            try:
                async with async_performance_timer(
                    "agent.execute_task",
                    agent_id=self.agent_id,
                    task_id=task_id,
                    logger=self._logger,
                ) as timer:
                    result = await self.execute_task(task)
            except asyncio.CancelledError:
                if not task.is_terminal:
                    task.transition_to(TaskStatus.CANCELLED)
                raise
            except Exception as e:
                error = AgentExecutionError(self.agent_id, task_id, e)
                self._record_error(error.message)

            execution_time_ms = (timer.duration or 0.0) * 1000
            if task_id in self._cancel_requested or task.status == TaskStatus.CANCELLED:
                if not task.is_terminal:
                    task.transition_to(TaskStatus.CANCELLED)
                await self._respond_to_task(
                    message,
                    task_id,
                    StatusCode.CANCELLED,
                    error="Task cancelled",
                    execution_time_ms=execution_time_ms,
                )
            elif error is not None:
                task.error = error.message
                task.transition_to(TaskStatus.FAILED)
                self._logger.warning(
                    "Task failed", task_id=task_id, task_type=task.type, error=error.message
                )
                await self._respond_to_task(
                    message,
                    task_id,
                    StatusCode.FAILURE,
                    error=error.message,
                    execution_time_ms=execution_time_ms,
                )
            else:
                task.result = result
                task.transition_to(TaskStatus.COMPLETED)
                await self._respond_to_task(
                    message,
                    task_id,
                    StatusCode.SUCCESS,
                    result=result,
                    execution_time_ms=execution_time_ms,
                )
        finally:
            self._task_finished()

    async def _respond_to_task(
        self,
        request: MessageEnvelope,
        task_id: str,
        status: StatusCode,
        *,
        result: Any = None,
        error: str | None = None,
        execution_time_ms: float = 0.0,
    ) -> None:
        payload = {
            "task_id": task_id,
            "status": status.value,
            "result": result,
            "error": error,
            "execution_time_ms": execution_time_ms,
        }
        await self._reply(
            create_response(
                request, MessageType.TASK_RESPONSE, payload, source=self.agent_id
            )
        )

    async def _handle_task_cancel(self, message: MessageEnvelope) -> None:
        task_id = message.payload.get("task_id", "")
        task = self._tasks.get(task_id)
        if task is None:
            error: OrchestrationError = NotFoundError("task", task_id)
        elif task.is_terminal:
            error = InvalidStateError(f"task {task_id}", task.status.value, "cancel")
        else:
            self._cancel_requested.add(task_id)
            task.transition_to(TaskStatus.CANCELLED)
            self._logger.info("Task cancellation requested", task_id=task_id)
            await self._reply(
                create_response(
                    message,
                    MessageType.TASK_UPDATE,
                    {"task_id": task_id, "status": TaskStatus.CANCELLED.value},
                    source=self.agent_id,
                )
            )
            return

        self._logger.info("Rejected task cancellation", task_id=task_id, error=str(error))
        await self._reply(
            create_error_response(
                message, error, StatusCode.VALIDATION_ERROR, source=self.agent_id
            )
        )

    async def _handle_status_update(self, message: MessageEnvelope) -> None:
        if not message.requires_response:
            return
        await self._reply(
            create_response(
                message, MessageType.STATUS_UPDATE, self.get_status(), source=self.agent_id
            )
        )

    async def _handle_heartbeat(self, message: MessageEnvelope) -> None:
        if message.correlation_id is not None:
            return
        await self._reply(
            create_response(
                message,
                MessageType.HEARTBEAT,
                {
                    "agent_id": self.agent_id,
                    "status": self.status.value,
                    "timestamp": time.time(),
                },
                source=self.agent_id,
            )
        )

    async def _handle_shutdown(self, message: MessageEnvelope) -> None:
        await self._reply(
            create_response(
                message,
                MessageType.STATUS_UPDATE,
                {
                    "agent_id": self.agent_id,
                    "status": AgentStatus.SHUTTING_DOWN.value,
                    "acknowledged": True,
                },
                source=self.agent_id,
            )
        )
        await self.shutdown()

    async def _status_broadcast_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.status_interval
                )
            except asyncio.TimeoutError:
                await self.send(BROADCAST, MessageType.STATUS_UPDATE, self.get_status())

    def _task_started(self) -> None:
        self._active_task_count += 1
        if self.status == AgentStatus.READY:
            self.status = AgentStatus.BUSY

    def _task_finished(self) -> None:
        self._active_task_count -= 1
        if self._active_task_count == 0 and self.status == AgentStatus.BUSY:
            self.status = AgentStatus.READY
