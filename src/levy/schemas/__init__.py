"""Message, task and health schemas shared across the orchestration core."""

from .messages import AgentDescriptor, HealthRecord, MessageEnvelope, Task, TaskInfo
from .types import (
    BROADCAST,
    TERMINAL_TASK_STATUSES,
    AgentStatus,
    AgentType,
    CircuitState,
    ErrorPayload,
    MessageType,
    Priority,
    StatusCode,
    TaskRequestPayload,
    TaskResponsePayload,
    TaskStatus,
)

__all__ = [
    "BROADCAST",
    "TERMINAL_TASK_STATUSES",
    "AgentDescriptor",
    "AgentStatus",
    "AgentType",
    "CircuitState",
    "ErrorPayload",
    "HealthRecord",
    "MessageEnvelope",
    "MessageType",
    "Priority",
    "StatusCode",
    "Task",
    "TaskInfo",
    "TaskRequestPayload",
    "TaskResponsePayload",
    "TaskStatus",
]
