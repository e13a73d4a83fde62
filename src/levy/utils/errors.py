"""Structured error types for the orchestration core.

This module provides structured exceptions with recovery actions for the
failure modes of task routing, agent execution and resilient delivery.
Each error carries a stable ``code`` so callers outside the core can map it
to their own responses without inspecting messages.
"""

import builtins
from enum import Enum
from typing import Any


class RecoveryAction(Enum):
    """Recovery actions suggested to the caller of a failed operation."""

    RETRY = "retry"
    RETRY_WITH_DELAY = "retry_with_delay"
    ABORT = "abort"
    REROUTE = "reroute"
    RESTART = "restart"
    WAIT = "wait"


class OrchestrationError(Exception):
    """Base exception for orchestration errors."""

    code = "orchestration_error"

    def __init__(
        self, message: str, recovery_action: RecoveryAction = RecoveryAction.ABORT
    ):
        """Initialize orchestration error.

        Args:
            message: Error message
            recovery_action: Suggested recovery action
        """
        super().__init__(message)
        self.message = message
        self.recovery_action = recovery_action

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for message payloads and status reports."""
        return {
            "error": self.message,
            "code": self.code,
            "recovery_action": self.recovery_action.value,
        }


class RoutingError(OrchestrationError):
    """Error raised when no agent can be resolved for a task type."""

    code = "routing_error"

    def __init__(self, task_type: str, destination: str | None = None):
        """Initialize routing error.

        Args:
            task_type: Task type that could not be routed
            destination: Explicit destination that was requested, if any
        """
        self.task_type = task_type
        self.destination = destination

        if destination:
            message = (
                f"No registered agent '{destination}' for task type '{task_type}'"
            )
        else:
            message = f"No agent available for task type '{task_type}'"

        super().__init__(message, RecoveryAction.REROUTE)


class NotFoundError(OrchestrationError):
    """Error raised when a task or agent id is unknown."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} {identifier} not found")


class InvalidStateError(OrchestrationError):
    """Error raised when an operation is not valid in the current state.

    This occurs, for example, when cancelling a task that already reached
    a terminal status or moving a task backwards in its lifecycle.
    """

    code = "invalid_state"

    def __init__(self, subject: str, current_state: str, operation: str):
        """Initialize invalid state error.

        Args:
            subject: Identifier of the object in the wrong state
            current_state: State the object is currently in
            operation: Operation that was attempted
        """
        self.subject = subject
        self.current_state = current_state
        self.operation = operation

        message = f"Cannot {operation} {subject}: current state is {current_state}"
        super().__init__(message)


class CapabilityError(OrchestrationError):
    """Error raised when an agent lacks a required capability."""

    code = "capability_error"

    def __init__(self, agent_id: str, capability: str):
        self.agent_id = agent_id
        self.capability = capability
        super().__init__(
            f"Agent {agent_id} lacks required capability '{capability}'",
            RecoveryAction.REROUTE,
        )


class ValidationError(OrchestrationError):
    """Error raised when a request carries an invalid field value."""

    code = "validation_error"

    def __init__(self, field: str, value: Any, reason: str):
        """Initialize validation error.

        Args:
            field: Name of the offending field
            value: Value that was rejected
            reason: What the field accepts
        """
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class CircuitOpenError(OrchestrationError):
    """Error raised when a circuit breaker rejects a call.

    The wrapped operation is never invoked when this error is raised.
    """

    code = "circuit_open"

    def __init__(self, component: str, failure_count: int, threshold: int):
        """Initialize circuit open error.

        Args:
            component: Breaker name (usually the destination key)
            failure_count: Failure count that tripped the breaker
            threshold: Configured failure threshold
        """
        self.component = component
        self.failure_count = failure_count
        self.threshold = threshold

        message = (
            f"Circuit breaker open for {component}: "
            f"{failure_count} failures (threshold: {threshold})"
        )

        super().__init__(message, RecoveryAction.RETRY_WITH_DELAY)


class TimeoutError(OrchestrationError):
    """Error raised when an operation or a response wait exceeds its timeout."""

    code = "timeout"

    def __init__(self, operation: str, timeout_ms: float, elapsed_ms: float):
        """Initialize timeout error.

        Args:
            operation: Operation that timed out
            timeout_ms: Timeout threshold in milliseconds
            elapsed_ms: Actual elapsed time in milliseconds
        """
        self.operation = operation
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms

        message = (
            f"Operation {operation} timed out: "
            f"{elapsed_ms:.1f}ms > {timeout_ms:.1f}ms"
        )

        super().__init__(message, RecoveryAction.RETRY)


class AgentExecutionError(OrchestrationError):
    """Wraps whatever an agent's ``execute_task`` raised."""

    code = "agent_execution_error"

    def __init__(self, agent_id: str, task_id: str, cause: BaseException):
        self.agent_id = agent_id
        self.task_id = task_id
        self.cause = cause

        message = (
            f"Agent {agent_id} failed task {task_id}: "
            f"{type(cause).__name__}: {cause}"
        )
        super().__init__(message, RecoveryAction.RETRY)


class DeliveryError(OrchestrationError):
    """Error raised when a point-to-point message reached no subscriber."""

    code = "delivery_error"

    def __init__(self, destination: str, message_id: str, reason: str = "no subscriber"):
        self.destination = destination
        self.message_id = message_id
        self.reason = reason
        super().__init__(
            f"Message {message_id} to {destination} not delivered: {reason}",
            RecoveryAction.RETRY_WITH_DELAY,
        )


class AgentStartupError(OrchestrationError):
    """Error raised when an agent fails to start.

    ``fatal`` is set once the configured retries are exhausted; non-fatal
    startup errors are retried by the lifecycle manager.
    """

    code = "agent_startup_error"

    def __init__(self, agent_id: str, attempts: int, reason: str, fatal: bool = False):
        self.agent_id = agent_id
        self.attempts = attempts
        self.reason = reason
        self.fatal = fatal

        message = f"Agent {agent_id} failed to start after {attempts} attempt(s): {reason}"
        super().__init__(
            message, RecoveryAction.ABORT if fatal else RecoveryAction.RETRY_WITH_DELAY
        )


def is_timeout(error: BaseException) -> bool:
    """Check whether an exception represents any kind of timeout."""
    return isinstance(error, TimeoutError | builtins.TimeoutError)
