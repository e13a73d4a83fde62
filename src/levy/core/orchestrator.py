"""Master control program: agent registry, task registry and dispatch loop.

The orchestrator is the single owner of the task registry and the priority
queue. Callers submit tasks synchronously and get ``{task_id, status}``
back at once; a background dispatch loop hands queued tasks to ready agents
over the bus, and agents report outcomes with correlated TASK_RESPONSE
messages.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, Field

from levy.schemas.messages import AgentDescriptor, MessageEnvelope, Task, TaskInfo
from levy.schemas.types import (
    BROADCAST,
    AgentStatus,
    AgentType,
    MessageType,
    Priority,
    StatusCode,
    TaskStatus,
)
from levy.utils.circuit_breaker import CircuitBreakerRegistry
from levy.utils.errors import (
    InvalidStateError,
    NotFoundError,
    OrchestrationError,
    RoutingError,
    TimeoutError,
    ValidationError,
)
from levy.utils.priority_queue import PriorityQueue
from levy.utils.telemetry import (
    MonotonicClock,
    get_logger,
    record_task_dispatch,
    record_task_finished,
    record_task_submitted,
    system_monitor,
    update_active_agents_count,
    update_task_queue_depth,
)

from .agent import BaseAgent
from .bus import CommunicationBus, ResilientBus, Subscription
from .protocol import (
    create_error_response,
    create_message,
    create_response,
    create_task_id,
)

MCP_ID = AgentType.MCP.value

# Task types the orchestrator answers itself when they arrive over the bus.
MCP_TASK_TYPES = frozenset(
    {
        "submit_task",
        "cancel_task",
        "get_task_status",
        "get_agent_status",
        "get_system_status",
    }
)

DEFAULT_ROUTING_TABLE: dict[str, str] = {
    # Data validation tasks
    "validate_property": AgentType.DATA_VALIDATION.value,
    "analyze_data_quality": AgentType.DATA_VALIDATION.value,
    "generate_data_recommendations": AgentType.DATA_VALIDATION.value,
    "validate_property_batch": AgentType.DATA_VALIDATION.value,
    # Valuation tasks
    "calculate_property_value": AgentType.VALUATION.value,
    "find_comparable_properties": AgentType.VALUATION.value,
    "detect_valuation_anomalies": AgentType.VALUATION.value,
    "analyze_property_trend": AgentType.VALUATION.value,
    "batch_valuation": AgentType.VALUATION.value,
    # Handled by the orchestrator itself
    **{task_type: MCP_ID for task_type in MCP_TASK_TYPES},
}

_RESPONSE_STATUS_MAP = {
    StatusCode.SUCCESS.value: TaskStatus.COMPLETED,
    StatusCode.PARTIAL_SUCCESS.value: TaskStatus.COMPLETED,
    StatusCode.CANCELLED.value: TaskStatus.CANCELLED,
}

_TASK_TO_STATUS_CODE = {
    TaskStatus.COMPLETED: StatusCode.SUCCESS,
    TaskStatus.FAILED: StatusCode.FAILURE,
    TaskStatus.CANCELLED: StatusCode.CANCELLED,
}


class OrchestratorConfig(BaseModel):
    """Configuration for the orchestrator.

    ``dispatch_policy`` decides what happens when the agent for the task at
    the head of the queue cannot take work: ``skip_blocked`` dispatches the
    next task whose agent is available, ``strict`` waits for the head.
    """

    orchestrator_id: str = MCP_ID
    status_check_interval: float = Field(default=30.0, gt=0)
    dispatch_poll_interval: float = Field(default=0.05, gt=0)
    dispatch_policy: Literal["skip_blocked", "strict"] = "skip_blocked"
    routing_table: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_ROUTING_TABLE)
    )


def _parse_priority(value: Priority | str) -> Priority:
    try:
        return Priority(value)
    except ValueError as e:
        allowed = ", ".join(p.value for p in Priority)
        raise ValidationError("priority", value, f"expected one of {allowed}") from e


def _task_queue_key(info: TaskInfo) -> tuple[int, float]:
    return (info.task.priority.rank, info.task.submitted_at)


class Orchestrator:
    """Routes tasks to agents and tracks their outcomes.

    Requirements addressed:
    - Submission validates routing up front and never blocks on execution
    - Tasks dispatch by priority, FIFO within a priority
    - Only READY agents whose breaker is not open receive work
    - Outcomes are forwarded to the original requester, correlated
    """

    def __init__(
        self,
        bus: CommunicationBus | ResilientBus,
        config: OrchestratorConfig | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ):
        """Initialize orchestrator.

        Args:
            bus: Bus used to reach agents (a ResilientBus wraps sends in breakers)
            config: Orchestrator configuration
            breakers: Breaker registry consulted before dispatch; defaults to
                the resilient bus's registry
        """
        self.bus = bus
        self.config = config or OrchestratorConfig()
        self.orchestrator_id = self.config.orchestrator_id
        if breakers is None and isinstance(bus, ResilientBus):
            breakers = bus.registry
        self._breakers = breakers

        self._agents: dict[str, BaseAgent] = {}
        self._descriptors: dict[str, AgentDescriptor] = {}
        self._tasks: dict[str, TaskInfo] = {}
        self._queue: PriorityQueue[TaskInfo] = PriorityQueue(key=_task_queue_key)
        self._task_waiters: dict[str, list[asyncio.Future[TaskInfo]]] = {}

        self._subscriptions: list[Subscription] = []
        self._dispatch_task: asyncio.Task[None] | None = None
        self._status_task: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self._shutdown_event = asyncio.Event()
        self._running = False
        self._started_at: float | None = None

        self._message_handlers: dict[
            MessageType, Callable[[MessageEnvelope], Awaitable[None]]
        ] = {
            MessageType.TASK_REQUEST: self._handle_inbound_request,
            MessageType.TASK_RESPONSE: self.handle_task_response,
            MessageType.TASK_UPDATE: self._handle_task_update,
            MessageType.AGENT_REGISTRATION: self._handle_registration,
            MessageType.STATUS_UPDATE: self._handle_status_update,
            MessageType.HEARTBEAT: self._handle_heartbeat,
            MessageType.ERROR: self._handle_error,
        }
        self._mcp_operations: dict[
            str, Callable[[dict[str, Any], MessageEnvelope], Awaitable[Any]]
        ] = {
            "submit_task": self._op_submit_task,
            "cancel_task": self._op_cancel_task,
            "get_task_status": self._op_get_task_status,
            "get_agent_status": self._op_get_agent_status,
            "get_system_status": self._op_get_system_status,
        }

        self._logger = get_logger("levy.orchestrator", orchestrator_id=self.orchestrator_id)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    async def start(self) -> None:
        """Subscribe to the bus and start the dispatch and status-check loops."""
        if self._running:
            return

        self._shutdown_event.clear()
        self._subscriptions = [
            self.bus.subscribe(self.orchestrator_id, self.handle_message, "orchestrator"),
            self.bus.subscribe(BROADCAST, self.handle_message, "orchestrator"),
        ]
        self._running = True
        self._started_at = MonotonicClock.now()
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        self._status_task = asyncio.create_task(self._status_check_loop())
        self._logger.info(
            "Orchestrator started",
            dispatch_policy=self.config.dispatch_policy,
            registered_agents=len(self._agents),
        )

    async def shutdown(self) -> None:
        """Stop the loops and detach from the bus. Queued tasks stay pending."""
        if not self._running:
            return

        self._logger.info("Starting orchestrator shutdown")
        self._shutdown_event.set()
        self._wakeup.set()

        for task in (self._dispatch_task, self._status_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._dispatch_task = None
        self._status_task = None

        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        for waiters in self._task_waiters.values():
            for future in waiters:
                if not future.done():
                    future.cancel()
        self._task_waiters.clear()

        self._running = False
        self._logger.info(
            "Orchestrator shutdown complete", pending_tasks=len(self._queue)
        )

    def register_agent(self, agent: BaseAgent, agent_type: str | None = None) -> None:
        """Register an agent handle; re-registering a type replaces it."""
        key = agent_type or agent.agent_type
        previous = self._agents.get(key)
        self._agents[key] = agent
        self._descriptors[key] = AgentDescriptor(
            agent_id=agent.agent_id,
            agent_type=key,
            capabilities=sorted(agent.capabilities),
            status=agent.status,
            last_seen=time.time(),
        )
        update_active_agents_count(len(self._agents))
        self._wakeup.set()
        self._logger.info(
            "Agent registered",
            agent_type=key,
            agent_id=agent.agent_id,
            replaced=previous is not None and previous is not agent,
        )

    def unregister_agent(self, agent_type: str) -> bool:
        if self._agents.pop(agent_type, None) is None:
            return False
        self._descriptors.pop(agent_type, None)
        update_active_agents_count(len(self._agents))
        self._logger.info("Agent unregistered", agent_type=agent_type)
        return True

    def get_agent(self, agent_type: str) -> BaseAgent | None:
        return self._agents.get(agent_type)

    def registered_agents(self) -> list[str]:
        return list(self._agents)

    def submit_task(
        self,
        task_type: str,
        parameters: dict[str, Any] | None = None,
        destination: str | None = None,
        priority: Priority | str = Priority.MEDIUM,
        response_required: bool = True,
        requester: str | None = None,
        message_id: str | None = None,
    ) -> dict[str, str]:
        """Accept a task for asynchronous execution.

        Args:
            task_type: Task type key
            parameters: Opaque task parameters; ``required_capability`` is
                checked against the destination agent
            destination: Explicit agent type (resolved via routing otherwise)
            priority: Task priority
            response_required: Forward the outcome to ``requester``
            requester: Bus id that should receive the final TASK_RESPONSE
            message_id: Id of the inbound message that requested the task

        Returns:
            ``{"task_id": ..., "status": "pending"}``

        Raises:
            RoutingError: If no registered agent resolves for the task
            CapabilityError: If the agent lacks ``required_capability``
            ValidationError: If ``priority`` is not a known priority
        """
        task_priority = _parse_priority(priority)
        params = dict(parameters or {})
        target = self._resolve_destination(task_type, params, destination)

        task = Task(
            id=create_task_id(),
            type=task_type,
            parameters=params,
            priority=task_priority,
        )
        info = TaskInfo(
            task=task,
            destination_agent=target,
            requester=requester,
            response_required=response_required,
            message_id=message_id,
        )
        self._tasks[task.id] = info
        self._queue.enqueue(info)
        update_task_queue_depth(len(self._queue))
        record_task_submitted(task_type, task.priority.value)
        self._wakeup.set()

        self._logger.info(
            "Task submitted",
            task_id=task.id,
            task_type=task_type,
            destination_agent=target,
            priority=task.priority.value,
        )
        return {"task_id": task.id, "status": TaskStatus.PENDING.value}

    def submit_validation(
        self,
        property_data: dict[str, Any],
        priority: Priority | str = Priority.HIGH,
        requester: str | None = None,
    ) -> dict[str, str]:
        """Submit a property record for data validation."""
        return self.submit_task(
            "validate_property",
            {"property": property_data},
            priority=priority,
            requester=requester,
        )

    def submit_valuation(
        self,
        property_id: str,
        method: str = "comparable_sales",
        parameters: dict[str, Any] | None = None,
        priority: Priority | str = Priority.MEDIUM,
        requester: str | None = None,
    ) -> dict[str, str]:
        """Submit a property valuation request."""
        return self.submit_task(
            "calculate_property_value",
            {"property_id": property_id, "method": method, **(parameters or {})},
            priority=priority,
            requester=requester,
        )

    async def cancel_task(self, task_id: str) -> dict[str, str]:
        """Cancel a pending or assigned task.

        An assigned task's agent is notified with TASK_CANCEL; the agent stops
        at its next checkpoint.

        Raises:
            NotFoundError: If the task id is unknown
            InvalidStateError: If the task is past the assigned stage
        """
        info = self._tasks.get(task_id)
        if info is None:
            raise NotFoundError("task", task_id)

        status = info.task.status
        if status not in (TaskStatus.PENDING, TaskStatus.ASSIGNED):
            raise InvalidStateError(f"task {task_id}", status.value, "cancel")

        if status == TaskStatus.PENDING:
            self._queue.remove(info)
            update_task_queue_depth(len(self._queue))

        await self._finish_task(info, TaskStatus.CANCELLED, error="Cancelled by request")

        if status == TaskStatus.ASSIGNED:
            await self.bus.send(
                create_message(
                    self.orchestrator_id,
                    info.destination_agent,
                    MessageType.TASK_CANCEL,
                    {"task_id": task_id},
                    priority=Priority.HIGH,
                    correlation_id=info.dispatch_message_id,
                )
            )

        return {"task_id": task_id, "status": TaskStatus.CANCELLED.value}

    def get_task_status(self, task_id: str) -> dict[str, Any]:
        info = self._tasks.get(task_id)
        if info is None:
            raise NotFoundError("task", task_id)
        return info.to_status_dict()

    def list_tasks(self, status: TaskStatus | None = None) -> list[dict[str, Any]]:
        return [
            info.to_status_dict()
            for info in self._tasks.values()
            if status is None or info.task.status == status
        ]

    def get_agent_status(self, agent_type: str | None = None) -> dict[str, Any]:
        """Live status of one agent, or of every registered agent.

        An agent whose circuit breaker is open is reported as ``circuit_open``
        with its own status under ``agent_status``.

        Raises:
            NotFoundError: If ``agent_type`` is not registered
        """
        if agent_type is None:
            return {key: self._agent_status(key) for key in self._agents}
        if agent_type not in self._agents:
            raise NotFoundError("agent", agent_type)
        return self._agent_status(agent_type)

    def get_system_status(self) -> dict[str, Any]:
        """Aggregate agent and task counts for dashboards and health checks."""
        agent_statuses = [self._agent_status(key) for key in self._agents]
        by_agent_status: dict[str, int] = {}
        for status in agent_statuses:
            by_agent_status[status["status"]] = by_agent_status.get(status["status"], 0) + 1

        task_counts = {status.value: 0 for status in TaskStatus}
        for info in self._tasks.values():
            task_counts[info.task.status.value] += 1

        uptime = 0.0
        if self._running and self._started_at is not None:
            uptime = MonotonicClock.now() - self._started_at

        healthy = sum(
            1
            for status in agent_statuses
            if status["status"]
            in (AgentStatus.READY.value, AgentStatus.BUSY.value)
        )

        return {
            "status": "running" if self._running else "stopped",
            "orchestrator_id": self.orchestrator_id,
            "agents": {
                "total": len(agent_statuses),
                "healthy": healthy,
                "by_status": by_agent_status,
                "statuses": agent_statuses,
            },
            "tasks": {"total": len(self._tasks), **task_counts},
            "queue_depth": len(self._queue),
            "dispatch_policy": self.config.dispatch_policy,
            "uptime_seconds": round(uptime, 3),
            "timestamp": time.time(),
        }

    async def wait_for_task(
        self, task_id: str, timeout: float | None = None
    ) -> dict[str, Any]:
        """Wait until a task reaches a terminal status.

        Raises:
            NotFoundError: If the task id is unknown
            TimeoutError: If the task is still running after ``timeout`` seconds
        """
        info = self._tasks.get(task_id)
        if info is None:
            raise NotFoundError("task", task_id)
        if info.task.is_terminal:
            return info.to_status_dict()

        future: asyncio.Future[TaskInfo] = asyncio.get_running_loop().create_future()
        self._task_waiters.setdefault(task_id, []).append(future)
        started = MonotonicClock.now()
        try:
            await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            elapsed_ms = (MonotonicClock.now() - started) * 1000
            raise TimeoutError(
                f"wait for task {task_id}", (timeout or 0) * 1000, elapsed_ms
            ) from e
        finally:
            waiters = self._task_waiters.get(task_id)
            if waiters and future in waiters:
                waiters.remove(future)
                if not waiters:
                    self._task_waiters.pop(task_id, None)
        return info.to_status_dict()

    async def handle_message(self, message: MessageEnvelope) -> None:
        """Dispatch an inbound message by type.

        A failing handler is logged; a point-to-point sender that asked for a
        response gets an ERROR reply.
        """
        handler = self._message_handlers.get(message.type)
        if handler is None:
            return
        try:
            await handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error(
                "Failed to handle message",
                message_id=message.id,
                message_type=message.type.value,
                source=message.source,
                error=str(e),
                error_type=type(e).__name__,
            )
            if message.requires_response and message.destination == self.orchestrator_id:
                await self.bus.send(
                    create_error_response(message, e, source=self.orchestrator_id)
                )

    async def handle_task_response(self, message: MessageEnvelope) -> None:
        """Resolve a task from an agent's TASK_RESPONSE.

        Responses for unknown or already finished tasks are ignored.
        """
        payload = message.payload
        task_id = payload.get("task_id", "")
        info = self._tasks.get(task_id)
        self._touch_agent(message.source)

        if info is None:
            self._logger.warning(
                "Response for unknown task", task_id=task_id, source=message.source
            )
            return
        if info.task.is_terminal:
            self._logger.debug(
                "Ignoring response for finished task",
                task_id=task_id,
                task_status=info.task.status.value,
            )
            return

        code = payload.get("status", StatusCode.FAILURE.value)
        status = _RESPONSE_STATUS_MAP.get(code, TaskStatus.FAILED)
        error = payload.get("error")
        if status == TaskStatus.FAILED and not error:
            error = f"Agent reported {code}"

        await self._finish_task(
            info,
            status,
            result=payload.get("result"),
            error=error,
            execution_time_ms=payload.get("execution_time_ms"),
        )

    async def request_status_updates(self) -> int:
        """Ask every registered agent for a STATUS_UPDATE.

        Returns:
            Number of agents the request reached
        """
        reached = 0
        for key, agent in list(self._agents.items()):
            result = await self.bus.send(
                create_message(
                    self.orchestrator_id,
                    agent.agent_id,
                    MessageType.STATUS_UPDATE,
                    {"request": "status", "agent_type": key},
                    priority=Priority.LOW,
                    requires_response=True,
                )
            )
            if result.success:
                reached += 1
        return reached

    def _resolve_destination(
        self, task_type: str, parameters: dict[str, Any], destination: str | None
    ) -> str:
        if destination is not None:
            target = destination
            if target not in self._agents:
                raise RoutingError(task_type, destination)
        else:
            routed = self.config.routing_table.get(task_type)
            if routed is not None:
                if routed == self.orchestrator_id or routed not in self._agents:
                    raise RoutingError(task_type)
                target = routed
            elif task_type in self._agents:
                target = task_type
            else:
                target = next(
                    (
                        key
                        for key, agent in self._agents.items()
                        if agent.has_capability(task_type)
                    ),
                    "",
                )
                if not target:
                    raise RoutingError(task_type)

        required = parameters.get("required_capability")
        if required:
            self._agents[target].require_capability(required)
        return target

    def _is_dispatchable(self, agent_type: str) -> bool:
        agent = self._agents.get(agent_type)
        if agent is None or agent.status != AgentStatus.READY:
            return False
        if self._breakers is not None:
            breaker = self._breakers.find_breaker(agent.agent_id)
            if breaker is not None and not breaker.allows_calls():
                return False
        return True

    async def _dispatch_loop(self) -> None:
        self._logger.info("Dispatch loop started")
        try:
            while not self._shutdown_event.is_set():
                self._wakeup.clear()
                try:
                    dispatched = await self._dispatch_pending()
                except Exception as e:
                    self._logger.error(
                        "Error in dispatch loop",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    dispatched = 0

                if dispatched:
                    await asyncio.sleep(0)
                    continue

                try:
                    await asyncio.wait_for(
                        self._wakeup.wait(), timeout=self.config.dispatch_poll_interval
                    )
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            self._logger.info("Dispatch loop cancelled")
            raise

    async def _dispatch_pending(self) -> int:
        """Run one dispatch pass over the queue.

        Returns:
            Number of tasks dispatched
        """
        if self._queue.is_empty():
            return 0

        if self.config.dispatch_policy == "strict":
            head = self._queue.peek()
            if head is None or not self._is_dispatchable(head.destination_agent):
                return 0
            self._queue.dequeue()
            await self._assign(head)
            return 1

        # Each agent takes at most one task per pass; a blocked agent keeps
        # its tasks queued in order while other agents' work proceeds.
        considered: set[str] = set()
        dispatched = 0
        for info in self._queue.ordered():
            target = info.destination_agent
            if target in considered or info.task.status != TaskStatus.PENDING:
                continue
            considered.add(target)
            if not self._is_dispatchable(target):
                continue
            self._queue.remove(info)
            await self._assign(info)
            dispatched += 1
        return dispatched

    async def _assign(self, info: TaskInfo) -> None:
        task = info.task
        agent = self._agents[info.destination_agent]
        update_task_queue_depth(len(self._queue))

        task.transition_to(TaskStatus.ASSIGNED)
        request = create_message(
            self.orchestrator_id,
            agent.agent_id,
            MessageType.TASK_REQUEST,
            {
                "task_id": task.id,
                "task_type": task.type,
                "parameters": task.parameters,
                "priority": task.priority.value,
            },
            priority=task.priority,
            requires_response=True,
        )
        info.dispatch_message_id = request.id
        record_task_dispatch(agent.agent_id, (task.assigned_at or 0) - task.submitted_at)
        self._logger.info(
            "Task dispatched",
            task_id=task.id,
            task_type=task.type,
            agent_id=agent.agent_id,
            priority=task.priority.value,
        )

        result = await self.bus.send(request)
        if not result.success and not task.is_terminal:
            await self._finish_task(
                info, TaskStatus.FAILED, error=f"Dispatch failed: {result.error}"
            )

    async def _finish_task(
        self,
        info: TaskInfo,
        status: TaskStatus,
        result: Any = None,
        error: str | None = None,
        execution_time_ms: float | None = None,
    ) -> None:
        task = info.task
        task.result = result
        task.error = error
        task.transition_to(status)
        record_task_finished(task.type, status.value)
        self._wakeup.set()

        log = self._logger.warning if status == TaskStatus.FAILED else self._logger.info
        log(
            "Task finished",
            task_id=task.id,
            task_type=task.type,
            status=status.value,
            agent_id=info.destination_agent,
            execution_time_ms=execution_time_ms,
            error=error,
        )

        for future in self._task_waiters.pop(task.id, []):
            if not future.done():
                future.set_result(info)

        if (
            info.response_required
            and info.requester
            and info.requester != self.orchestrator_id
        ):
            await self.bus.send(
                create_message(
                    self.orchestrator_id,
                    info.requester,
                    MessageType.TASK_RESPONSE,
                    {
                        "task_id": task.id,
                        "task_type": task.type,
                        "status": _TASK_TO_STATUS_CODE[status].value,
                        "result": task.result,
                        "error": task.error,
                    },
                    priority=task.priority,
                    correlation_id=info.message_id,
                )
            )

    async def _handle_task_update(self, message: MessageEnvelope) -> None:
        payload = message.payload
        info = self._tasks.get(payload.get("task_id", ""))
        self._touch_agent(message.source)
        if info is None or info.task.is_terminal:
            return
        info.task.progress.update(
            {
                "agent_status": payload.get("status"),
                "updated_at": time.time(),
                **(payload.get("progress") or {}),
            }
        )

    async def _handle_registration(self, message: MessageEnvelope) -> None:
        key = self._key_for_agent_id(message.source)
        if key is None:
            self._logger.warning(
                "Registration message from unregistered agent", agent_id=message.source
            )
            return
        descriptor = self._descriptors[key]
        capabilities = message.payload.get("capabilities")
        if capabilities is not None:
            descriptor.capabilities = list(capabilities)
        self._touch_agent(message.source, message.payload.get("status"))
        self._wakeup.set()

    async def _handle_status_update(self, message: MessageEnvelope) -> None:
        if message.source == self.orchestrator_id:
            return
        key = self._key_for_agent_id(message.source)
        if key is None:
            return
        payload = message.payload
        self._touch_agent(message.source, payload.get("status"))
        self._descriptors[key].metrics = {
            "tasks": payload.get("tasks", {}),
            "uptime_seconds": payload.get("uptime_seconds"),
            "error_count": payload.get("error_count"),
        }
        self._wakeup.set()

    async def _handle_heartbeat(self, message: MessageEnvelope) -> None:
        self._touch_agent(message.source)
        if message.correlation_id is None and message.destination == self.orchestrator_id:
            await self.bus.send(
                create_response(
                    message,
                    MessageType.HEARTBEAT,
                    {"agent_id": self.orchestrator_id, "status": "running"},
                    source=self.orchestrator_id,
                )
            )

    async def _handle_error(self, message: MessageEnvelope) -> None:
        self._logger.warning(
            "Error message received",
            source=message.source,
            error=message.payload.get("error"),
            error_code=message.payload.get("error_code"),
            original_message_id=message.payload.get("original_message_id"),
        )

    async def _handle_inbound_request(self, message: MessageEnvelope) -> None:
        if message.destination != self.orchestrator_id:
            return

        payload = message.payload
        task_type = payload.get("task_type", "")
        parameters = dict(payload.get("parameters") or {})

        try:
            operation = self._mcp_operations.get(task_type)
            if operation is None:
                ack = self.submit_task(
                    task_type,
                    parameters,
                    destination=payload.get("destination_agent"),
                    priority=message.priority,
                    requester=message.source,
                    message_id=message.id,
                )
                await self._acknowledge(message, ack)
                return

            result = await operation(parameters, message)
        except OrchestrationError as e:
            self._logger.info(
                "Rejected inbound request",
                task_type=task_type,
                source=message.source,
                error=str(e),
            )
            await self.bus.send(
                create_error_response(
                    message, e, StatusCode.VALIDATION_ERROR, source=self.orchestrator_id
                )
            )
            return

        if result is not None:
            await self.bus.send(
                create_response(
                    message,
                    MessageType.TASK_RESPONSE,
                    {
                        "task_type": task_type,
                        "status": StatusCode.SUCCESS.value,
                        "result": result,
                    },
                    source=self.orchestrator_id,
                )
            )

    async def _acknowledge(self, message: MessageEnvelope, ack: dict[str, str]) -> None:
        await self.bus.send(
            create_response(
                message, MessageType.TASK_UPDATE, ack, source=self.orchestrator_id
            )
        )

    async def _op_submit_task(
        self, parameters: dict[str, Any], message: MessageEnvelope
    ) -> None:
        ack = self.submit_task(
            parameters.get("task_type", ""),
            parameters.get("parameters"),
            destination=parameters.get("destination_agent"),
            priority=parameters.get("priority", Priority.MEDIUM),
            response_required=parameters.get("response_required", True),
            requester=message.source,
            message_id=message.id,
        )
        await self._acknowledge(message, ack)

    async def _op_cancel_task(
        self, parameters: dict[str, Any], message: MessageEnvelope
    ) -> dict[str, str]:
        return await self.cancel_task(parameters.get("task_id", ""))

    async def _op_get_task_status(
        self, parameters: dict[str, Any], message: MessageEnvelope
    ) -> dict[str, Any]:
        return self.get_task_status(parameters.get("task_id", ""))

    async def _op_get_agent_status(
        self, parameters: dict[str, Any], message: MessageEnvelope
    ) -> dict[str, Any]:
        return self.get_agent_status(parameters.get("agent_type"))

    async def _op_get_system_status(
        self, parameters: dict[str, Any], message: MessageEnvelope
    ) -> dict[str, Any]:
        return self.get_system_status()

    async def _status_check_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.status_check_interval,
                )
            except asyncio.TimeoutError:
                reached = await self.request_status_updates()
                system_monitor.record_memory_usage("orchestrator")
                self._logger.debug(
                    "Status check sent",
                    agents=len(self._agents),
                    reached=reached,
                    queue_depth=len(self._queue),
                )

    def _agent_status(self, key: str) -> dict[str, Any]:
        agent = self._agents[key]
        descriptor = self._descriptors[key]
        status = agent.get_status()
        status["agent_type"] = key
        status["last_seen"] = descriptor.last_seen
        status["observed_status"] = descriptor.status.value
        if self._breakers is not None:
            breaker = self._breakers.find_breaker(agent.agent_id)
            if breaker is not None:
                status["circuit_state"] = breaker.state.value
                if breaker.is_open:
                    status["agent_status"] = status["status"]
                    status["status"] = AgentStatus.CIRCUIT_OPEN.value
        return status

    def _key_for_agent_id(self, agent_id: str) -> str | None:
        for key, agent in self._agents.items():
            if agent.agent_id == agent_id:
                return key
        return None

    def _touch_agent(self, agent_id: str, status: str | None = None) -> None:
        key = self._key_for_agent_id(agent_id)
        if key is None:
            return
        descriptor = self._descriptors[key]
        descriptor.last_seen = time.time()
        if status:
            try:
                descriptor.status = AgentStatus(status)
            except ValueError:
                self._logger.debug(
                    "Unknown agent status reported", agent_id=agent_id, status=status
                )
