"""Pydantic models for bus envelopes, tasks and agent health."""

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from levy.schemas.types import (
    AgentStatus,
    MessageType,
    Priority,
    TaskStatus,
)
from levy.utils.errors import InvalidStateError


class MessageEnvelope(BaseModel):
    """Message routed by the communication bus.

    ``correlation_id`` references the id of an earlier message this one
    answers. ``destination`` is an agent id or the broadcast address.
    """

    id: str = Field(..., description="Globally unique message identifier")
    timestamp: float = Field(
        default_factory=time.time, description="Wall clock creation time"
    )
    source: str = Field(..., description="Sender id")
    destination: str = Field(..., description="Receiver id or 'broadcast'")
    type: MessageType = Field(..., description="Message kind")
    priority: Priority = Field(default=Priority.MEDIUM)
    payload: dict[str, Any] = Field(
        default_factory=dict, description="Opaque message body"
    )
    correlation_id: str | None = Field(
        default=None, description="Id of the message this one responds to"
    )
    requires_response: bool = Field(default=False)
    expires_at: float | None = Field(
        default=None, description="Wall clock time after which the message is dropped"
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "id": "msg_5f0c2d9e0b7a4f7e9d1c3b2a1e0f9d8c",
                    "source": "master_control_program",
                    "destination": "data_validation_agent",
                    "type": "task_request",
                    "priority": "high",
                    "payload": {"task_id": "task_1", "task_type": "validate_property"},
                    "requires_response": True,
                }
            ]
        }
    )

    @field_validator("id", "source", "destination")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must not be empty")
        return v

    def is_expired(self, now: float | None = None) -> bool:
        """Check whether the message is past its expiry time."""
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


class Task(BaseModel):
    """Unit of work routed by the orchestrator and executed by an agent.

    Status only moves forward; once a terminal status is reached the task
    never transitions again.
    """

    id: str
    type: str = Field(..., description="Task type key, e.g. 'validate_property'")
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    submitted_at: float = Field(default_factory=time.time)
    assigned_at: float | None = None
    started_at: float | None = None
    completed_at: float | None = None
    result: Any = None
    error: str | None = None
    progress: dict[str, Any] = Field(default_factory=dict)

    def transition_to(self, target: TaskStatus, now: float | None = None) -> None:
        """Move the task to ``target``, stamping the matching timestamp.

        Raises:
            InvalidStateError: If the transition would revert the task or
                leave a terminal status
        """
        if not self.status.can_transition_to(target):
            raise InvalidStateError(
                f"task {self.id}", self.status.value, f"move to {target.value}"
            )

        stamp = now if now is not None else time.time()
        self.status = target
        if target == TaskStatus.ASSIGNED:
            self.assigned_at = stamp
        elif target == TaskStatus.PROCESSING:
            self.started_at = stamp
        elif target.is_terminal:
            self.completed_at = stamp

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class TaskInfo(BaseModel):
    """Orchestrator-owned wrapper around a task and its routing."""

    task: Task
    destination_agent: str
    requester: str | None = Field(
        default=None, description="Bus id to forward the final result to"
    )
    response_required: bool = True
    message_id: str | None = Field(
        default=None, description="Id of the inbound request that created the task"
    )
    dispatch_message_id: str | None = Field(
        default=None, description="Id of the TASK_REQUEST sent to the agent"
    )

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def status(self) -> TaskStatus:
        return self.task.status

    def to_status_dict(self) -> dict[str, Any]:
        """Plain status view used by the query API."""
        task = self.task
        return {
            "task_id": task.id,
            "task_type": task.type,
            "status": task.status.value,
            "priority": task.priority.value,
            "destination_agent": self.destination_agent,
            "requester": self.requester,
            "submitted_at": task.submitted_at,
            "assigned_at": task.assigned_at,
            "completed_at": task.completed_at,
            "result": task.result,
            "error": task.error,
            "progress": dict(task.progress),
        }


class AgentDescriptor(BaseModel):
    """Orchestrator view of a registered agent."""

    agent_id: str
    agent_type: str
    capabilities: list[str] = Field(default_factory=list)
    status: AgentStatus = AgentStatus.OFFLINE
    last_seen: float | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)


class HealthRecord(BaseModel):
    """Lifecycle manager health state for one agent.

    ``restart_attempts`` counts restarts over the agent's lifetime and is
    bounded by ``max_retries``.
    """

    agent_id: str
    status: AgentStatus = AgentStatus.OFFLINE
    is_healthy: bool = False
    consecutive_failures: int = Field(default=0, ge=0)
    restart_attempts: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    last_check_time: float | None = None
    last_error: str | None = None
    error_count: int = Field(default=0, ge=0)

    @property
    def retries_exhausted(self) -> bool:
        return self.restart_attempts >= self.max_retries
