"""Unit tests for BaseAgent lifecycle, message handling and task execution."""

import asyncio
from typing import Any

import pytest

from levy.core.agent import BaseAgent
from levy.core.bus import CommunicationBus
from levy.core.protocol import create_message
from levy.schemas.messages import MessageEnvelope, Task
from levy.schemas.types import (
    BROADCAST,
    AgentStatus,
    MessageType,
    TaskStatus,
)
from levy.utils.errors import CapabilityError, InvalidStateError

ORCHESTRATOR = "master_control_program"


class ScriptedAgent(BaseAgent):
    """Agent whose behavior is driven by task parameters."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.release = asyncio.Event()
        self.fail_initialize = False

    async def on_initialize(self) -> None:
        if self.fail_initialize:
            raise RuntimeError("init failed")

    async def execute_task(self, task: Task) -> Any:
        if task.parameters.get("fail"):
            raise ValueError("bad parameters")
        if task.parameters.get("block"):
            while not self.release.is_set() and not self.is_cancelled(task.id):
                await asyncio.sleep(0.001)
        return {"echo": task.parameters.get("value")}


class Inbox:
    """Collects what the agent sends to the orchestrator address."""

    def __init__(self, bus: CommunicationBus, key: str = ORCHESTRATOR) -> None:
        self.messages: list[MessageEnvelope] = []
        bus.subscribe(key, self.messages.append)

    def of_type(self, message_type: MessageType) -> list[MessageEnvelope]:
        return [m for m in self.messages if m.type == message_type]


@pytest.fixture
def bus() -> CommunicationBus:
    return CommunicationBus()


@pytest.fixture
def inbox(bus: CommunicationBus) -> Inbox:
    return Inbox(bus)


@pytest.fixture
def agent(bus: CommunicationBus) -> ScriptedAgent:
    return ScriptedAgent("agent_a", bus, capabilities=["echo"], status_interval=60.0)


def task_request(task_id: str = "task_1", **parameters: Any) -> MessageEnvelope:
    return create_message(
        ORCHESTRATOR,
        "agent_a",
        MessageType.TASK_REQUEST,
        {"task_id": task_id, "task_type": "echo", "parameters": parameters},
        requires_response=True,
    )


async def deliver(bus: CommunicationBus, message: MessageEnvelope) -> None:
    bus.publish(message)
    await bus.drain()


class TestLifecycle:
    """Test initialization and shutdown."""

    @pytest.mark.asyncio
    async def test_initialize_registers_with_orchestrator(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()

        assert agent.status == AgentStatus.READY
        assert bus.has_subscribers("agent_a")
        assert bus.has_subscribers(BROADCAST)
        registration = inbox.of_type(MessageType.AGENT_REGISTRATION)
        assert len(registration) == 1
        assert registration[0].payload["capabilities"] == ["echo"]

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_twice_is_rejected(self, agent: ScriptedAgent) -> None:
        await agent.initialize()

        with pytest.raises(InvalidStateError):
            await agent.initialize()

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_failed_initialize_enters_error(self, agent: ScriptedAgent) -> None:
        agent.fail_initialize = True

        with pytest.raises(RuntimeError):
            await agent.initialize()

        assert agent.status == AgentStatus.ERROR
        assert agent.get_status()["last_error"] == "init failed"

    @pytest.mark.asyncio
    async def test_shutdown_cancels_open_tasks(
        self, agent: ScriptedAgent, bus: CommunicationBus
    ) -> None:
        await agent.initialize()
        bus.publish(task_request(block=True))
        await asyncio.sleep(0.01)

        await agent.shutdown()
        await bus.drain()

        assert agent.status == AgentStatus.OFFLINE
        assert agent.get_task("task_1").status == TaskStatus.CANCELLED
        assert not bus.has_subscribers("agent_a")

    @pytest.mark.asyncio
    async def test_status_broadcast(self, bus: CommunicationBus) -> None:
        agent = ScriptedAgent("agent_a", bus, status_interval=0.01)
        observer: list[MessageEnvelope] = []
        bus.subscribe("observer", observer.append)

        await agent.initialize()
        await asyncio.sleep(0.05)
        await agent.shutdown()

        assert any(m.type == MessageType.STATUS_UPDATE for m in observer)


class TestTaskExecution:
    """Test task request handling."""

    @pytest.mark.asyncio
    async def test_success_response(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()
        request = task_request(value=42)

        await deliver(bus, request)

        updates = inbox.of_type(MessageType.TASK_UPDATE)
        assert updates[0].payload == {"task_id": "task_1", "status": "processing"}
        assert updates[0].correlation_id == request.id

        response = inbox.of_type(MessageType.TASK_RESPONSE)[0]
        assert response.correlation_id == request.id
        assert response.payload["status"] == "success"
        assert response.payload["result"] == {"echo": 42}
        assert response.payload["execution_time_ms"] >= 0
        assert agent.get_task("task_1").status == TaskStatus.COMPLETED
        assert agent.status == AgentStatus.READY

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_failure_response_keeps_agent_running(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()

        await deliver(bus, task_request(fail=True))

        response = inbox.of_type(MessageType.TASK_RESPONSE)[0]
        assert response.payload["status"] == "failure"
        assert "ValueError: bad parameters" in response.payload["error"]
        assert agent.status == AgentStatus.READY
        assert agent.get_status()["error_count"] == 1

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_busy_while_executing(
        self, agent: ScriptedAgent, bus: CommunicationBus
    ) -> None:
        await agent.initialize()
        bus.publish(task_request(block=True))
        await asyncio.sleep(0.01)

        assert agent.status == AgentStatus.BUSY
        assert agent.get_status()["active_tasks"] == 1

        agent.release.set()
        await bus.drain()
        assert agent.status == AgentStatus.READY

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_duplicate_request_is_ignored(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()

        await deliver(bus, task_request(value=1))
        await deliver(bus, task_request(value=2))

        assert len(inbox.of_type(MessageType.TASK_RESPONSE)) == 1

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_rejects_tasks_when_not_accepting(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()
        agent.crash("simulated")

        await deliver(bus, task_request())

        response = inbox.of_type(MessageType.TASK_RESPONSE)[0]
        assert response.payload["status"] == "failure"
        assert "not accepting" in response.payload["error"]
        assert agent.get_task("task_1") is None

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_missing_task_id_gets_error_reply(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()

        await deliver(
            bus,
            create_message(
                ORCHESTRATOR,
                "agent_a",
                MessageType.TASK_REQUEST,
                {},
                requires_response=True,
            ),
        )

        errors = inbox.of_type(MessageType.ERROR)
        assert len(errors) == 1
        assert "task_id" in errors[0].payload["error"]

        await agent.shutdown()


class TestCancellation:
    """Test cooperative task cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_running_task(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()
        bus.publish(task_request(block=True))
        await asyncio.sleep(0.01)

        await deliver(
            bus,
            create_message(
                ORCHESTRATOR, "agent_a", MessageType.TASK_CANCEL, {"task_id": "task_1"}
            ),
        )

        assert agent.is_cancelled("task_1")
        assert agent.get_task("task_1").status == TaskStatus.CANCELLED
        response = inbox.of_type(MessageType.TASK_RESPONSE)[0]
        assert response.payload["status"] == "cancelled"
        cancelled_updates = [
            m
            for m in inbox.of_type(MessageType.TASK_UPDATE)
            if m.payload["status"] == "cancelled"
        ]
        assert len(cancelled_updates) == 1

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_unknown_task(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()

        await deliver(
            bus,
            create_message(
                ORCHESTRATOR, "agent_a", MessageType.TASK_CANCEL, {"task_id": "nope"}
            ),
        )

        error = inbox.of_type(MessageType.ERROR)[0]
        assert error.payload["error_type"] == "not_found"

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_completed_task(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()
        await deliver(bus, task_request())

        await deliver(
            bus,
            create_message(
                ORCHESTRATOR, "agent_a", MessageType.TASK_CANCEL, {"task_id": "task_1"}
            ),
        )

        error = inbox.of_type(MessageType.ERROR)[0]
        assert error.payload["error_type"] == "invalid_state"
        assert agent.get_task("task_1").status == TaskStatus.COMPLETED

        await agent.shutdown()


class TestControlMessages:
    """Test status, heartbeat and shutdown messages."""

    @pytest.mark.asyncio
    async def test_status_request_gets_report(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()

        await deliver(
            bus,
            create_message(
                ORCHESTRATOR,
                "agent_a",
                MessageType.STATUS_UPDATE,
                requires_response=True,
            ),
        )

        report = inbox.of_type(MessageType.STATUS_UPDATE)[0].payload
        assert report["agent_id"] == "agent_a"
        assert report["status"] == "ready"
        assert report["tasks"]["total"] == 0

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_heartbeat_reply_only_for_requests(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()
        ping = create_message(ORCHESTRATOR, "agent_a", MessageType.HEARTBEAT)

        await deliver(bus, ping)
        await deliver(
            bus,
            create_message(
                ORCHESTRATOR, "agent_a", MessageType.HEARTBEAT, correlation_id=ping.id
            ),
        )

        heartbeats = inbox.of_type(MessageType.HEARTBEAT)
        assert len(heartbeats) == 1
        assert heartbeats[0].correlation_id == ping.id

        await agent.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_message(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()

        await deliver(
            bus, create_message(ORCHESTRATOR, BROADCAST, MessageType.SHUTDOWN)
        )

        ack = inbox.of_type(MessageType.STATUS_UPDATE)[0]
        assert ack.payload["acknowledged"]
        assert agent.status == AgentStatus.OFFLINE


class TestCapabilitiesAndDegradation:
    """Test capability checks and degraded mode."""

    def test_capabilities(self, agent: ScriptedAgent) -> None:
        assert agent.has_capability("echo")
        agent.require_capability("echo")

        with pytest.raises(CapabilityError):
            agent.require_capability("ocr")

    @pytest.mark.asyncio
    async def test_degraded_agent_still_accepts_tasks(
        self, agent: ScriptedAgent, bus: CommunicationBus, inbox: Inbox
    ) -> None:
        await agent.initialize()
        agent.set_degraded("slow upstream")

        await deliver(bus, task_request(value=1))

        assert agent.status == AgentStatus.DEGRADED
        assert inbox.of_type(MessageType.TASK_RESPONSE)[0].payload["status"] == "success"

        agent.clear_degraded()
        assert agent.status == AgentStatus.READY
        assert agent.get_status()["degraded_reason"] is None

        await agent.shutdown()
