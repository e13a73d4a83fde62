# Shared utilities and helpers

from .errors import (
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
)
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    CircuitBreakerStats,
)
from .priority_queue import PriorityQueue

__all__ = [
    "AgentExecutionError",
    "AgentStartupError",
    "CapabilityError",
    "CircuitBreaker",
    "CircuitBreakerOptions",
    "CircuitBreakerRegistry",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "DeliveryError",
    "InvalidStateError",
    "NotFoundError",
    "OrchestrationError",
    "PriorityQueue",
    "RecoveryAction",
    "RoutingError",
    "TimeoutError",
    "ValidationError",
]
