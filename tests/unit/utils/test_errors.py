"""Unit tests for structured orchestration errors."""

import asyncio
import builtins

import pytest

from levy.utils.errors import (
    AgentExecutionError,
    AgentStartupError,
    CapabilityError,
    CircuitOpenError,
    DeliveryError,
    InvalidStateError,
    NotFoundError,
    OrchestrationError,
    RecoveryAction,
    RoutingError,
    TimeoutError,
    ValidationError,
    is_timeout,
)


class TestOrchestrationError:
    """Test the base error."""

    def test_defaults_to_abort(self) -> None:
        error = OrchestrationError("boom")

        assert str(error) == "boom"
        assert error.recovery_action == RecoveryAction.ABORT

    def test_to_dict(self) -> None:
        """Serialized errors carry message, code and recovery action."""
        error = CircuitOpenError("agent_a", 3, 3)

        assert error.to_dict() == {
            "error": error.message,
            "code": "circuit_open",
            "recovery_action": "retry_with_delay",
        }


class TestSpecificErrors:
    """Test the attributes and messages of each error class."""

    def test_routing_error_without_destination(self) -> None:
        error = RoutingError("unknown_task")

        assert error.task_type == "unknown_task"
        assert error.destination is None
        assert "unknown_task" in str(error)
        assert error.recovery_action == RecoveryAction.REROUTE

    def test_routing_error_with_destination(self) -> None:
        error = RoutingError("echo", destination="missing_agent")

        assert "missing_agent" in str(error)
        assert error.code == "routing_error"

    def test_not_found_error(self) -> None:
        error = NotFoundError("task", "task_123")

        assert str(error) == "Task task_123 not found"
        assert error.kind == "task"
        assert error.identifier == "task_123"

    def test_invalid_state_error(self) -> None:
        error = InvalidStateError("task_1", "completed", "cancel")

        assert error.current_state == "completed"
        assert error.operation == "cancel"
        assert "Cannot cancel task_1" in str(error)

    def test_capability_error(self) -> None:
        error = CapabilityError("agent_a", "ocr")

        assert error.agent_id == "agent_a"
        assert error.capability == "ocr"
        assert error.recovery_action == RecoveryAction.REROUTE

    def test_validation_error(self) -> None:
        error = ValidationError("priority", "urgent", "expected one of high, low")

        assert error.field == "priority"
        assert error.value == "urgent"
        assert str(error) == "Invalid priority 'urgent': expected one of high, low"
        assert error.to_dict()["code"] == "validation_error"

    def test_circuit_open_error(self) -> None:
        error = CircuitOpenError("agent_a", 5, 3)

        assert error.component == "agent_a"
        assert error.failure_count == 5
        assert error.threshold == 3
        assert "threshold: 3" in str(error)

    def test_timeout_error(self) -> None:
        error = TimeoutError("request", 100.0, 150.5)

        assert error.timeout_ms == 100.0
        assert error.elapsed_ms == 150.5
        assert "150.5ms > 100.0ms" in str(error)
        assert error.recovery_action == RecoveryAction.RETRY

    def test_agent_execution_error_wraps_cause(self) -> None:
        cause = ValueError("bad parameters")
        error = AgentExecutionError("agent_a", "task_1", cause)

        assert error.cause is cause
        assert "ValueError: bad parameters" in str(error)

    def test_delivery_error_reason(self) -> None:
        error = DeliveryError("agent_a", "msg_1")

        assert error.reason == "no subscriber"
        assert "not delivered" in str(error)

    def test_startup_error_recovery_depends_on_fatal(self) -> None:
        retryable = AgentStartupError("agent_a", 1, "init failed")
        fatal = AgentStartupError("agent_a", 4, "init failed", fatal=True)

        assert retryable.recovery_action == RecoveryAction.RETRY_WITH_DELAY
        assert fatal.recovery_action == RecoveryAction.ABORT
        assert fatal.fatal


class TestIsTimeout:
    """Test timeout classification."""

    @pytest.mark.parametrize(
        "error",
        [
            TimeoutError("op", 1.0, 2.0),
            builtins.TimeoutError(),
            asyncio.TimeoutError(),
        ],
    )
    def test_timeouts(self, error: BaseException) -> None:
        assert is_timeout(error)

    def test_other_errors(self) -> None:
        assert not is_timeout(ValueError("nope"))
        assert not is_timeout(DeliveryError("a", "m"))
