"""levy - Multi-agent orchestration core for property-tax audits.

levy routes audit tasks from a master control program to specialist
agents over an in-process message bus, isolating failing agents behind
circuit breakers and restarting crashed ones.
"""

__version__ = "0.1.0"

from .core import (
    AgentConfig,
    AgentLifecycleManager,
    BaseAgent,
    CommunicationBus,
    Orchestrator,
    OrchestratorConfig,
    ResilientBus,
)
from .resilience import FailureType, FaultTestOptions, ResilienceHarness
from .runtime import AgentRuntime
from .schemas import MessageEnvelope, MessageType, Priority, Task, TaskStatus
from .utils import CircuitBreaker, CircuitBreakerRegistry, OrchestrationError

__all__ = [
    "AgentConfig",
    "AgentLifecycleManager",
    "AgentRuntime",
    "BaseAgent",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CommunicationBus",
    "FailureType",
    "FaultTestOptions",
    "MessageEnvelope",
    "MessageType",
    "OrchestrationError",
    "Orchestrator",
    "OrchestratorConfig",
    "Priority",
    "ResilienceHarness",
    "ResilientBus",
    "Task",
    "TaskStatus",
    "__version__",
]
