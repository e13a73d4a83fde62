"""Core type definitions: closed enums and TypedDict payload shapes."""

from enum import Enum
from typing import Annotated, Any, TypedDict

BROADCAST = "broadcast"


class MessageType(str, Enum):
    """Closed set of message kinds carried on the communication bus."""

    # Control messages
    TASK_REQUEST = "task_request"
    TASK_RESPONSE = "task_response"
    TASK_UPDATE = "task_update"
    TASK_CANCEL = "task_cancel"

    # Data and coordination
    DATA_REQUEST = "data_request"
    DATA_RESPONSE = "data_response"
    COORDINATION_REQUEST = "coordination_request"
    COORDINATION_RESPONSE = "coordination_response"

    # System messages
    AGENT_REGISTRATION = "agent_registration"
    STATUS_UPDATE = "status_update"
    HEARTBEAT = "heartbeat"
    SHUTDOWN = "shutdown"
    ERROR = "error"
    LOG = "log"
    CIRCUIT_BREAKER_STATUS = "circuit_breaker_status"


class Priority(str, Enum):
    """Message and task priority. Lower rank is served first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class StatusCode(str, Enum):
    """Outcome codes carried by task responses and error messages."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"
    VALIDATION_ERROR = "validation_error"
    AUTHORIZATION_ERROR = "authorization_error"
    RESOURCE_ERROR = "resource_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SYSTEM_ERROR = "system_error"


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES

    def can_transition_to(self, target: "TaskStatus") -> bool:
        """Check whether moving from this status to ``target`` is allowed.

        Transitions only move forward; terminal statuses have no successors.
        """
        return target in _TASK_TRANSITIONS[self]


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {
            TaskStatus.ASSIGNED,
            TaskStatus.PROCESSING,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.ASSIGNED: frozenset(
        {
            TaskStatus.PROCESSING,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class AgentStatus(str, Enum):
    """Agent lifecycle status.

    CIRCUIT_OPEN is never set by an agent itself; it is an overlay reported
    by observers when the agent's circuit breaker is open.
    """

    OFFLINE = "offline"
    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    DEGRADED = "degraded"
    ERROR = "error"
    SHUTTING_DOWN = "shutting_down"
    CIRCUIT_OPEN = "circuit_open"


class AgentType(str, Enum):
    """Well-known agent identifiers in the audit workflow."""

    MCP = "master_control_program"
    DATA_VALIDATION = "data_validation_agent"
    VALUATION = "valuation_agent"
    USER_INTERACTION = "user_interaction_agent"
    TAX_INFORMATION = "tax_information_agent"
    WORKFLOW = "workflow_agent"
    LEGAL_COMPLIANCE = "legal_compliance_agent"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class TaskRequestPayload(TypedDict):
    """Payload of a TASK_REQUEST sent from the orchestrator to an agent."""

    task_id: Annotated[str, "Identifier of the task to execute"]
    task_type: Annotated[str, "Task type key (e.g. 'validate_property')"]
    parameters: Annotated[dict[str, Any], "Opaque task parameters"]
    priority: Annotated[str, "Priority value of the task"]


class TaskResponsePayload(TypedDict, total=False):
    """Payload of a TASK_RESPONSE returned by an agent."""

    task_id: Annotated[str, "Identifier of the task this response resolves"]
    status: Annotated[str, "StatusCode value describing the outcome"]
    result: Annotated[Any, "Serializable result produced by the agent"]
    error: Annotated[str | None, "Error description when the task failed"]
    execution_time_ms: Annotated[float, "Time spent inside execute_task"]


class ErrorPayload(TypedDict):
    """Payload of an ERROR message built by create_error_response."""

    error: Annotated[str, "Human readable error description"]
    error_code: Annotated[str, "StatusCode value for the failure"]
    original_message_id: Annotated[str, "Id of the message that caused the error"]
    original_message_type: Annotated[str, "Type of the message that caused the error"]
