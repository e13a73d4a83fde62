"""Core orchestration: protocol, bus, agents, orchestrator and lifecycle."""

from .agent import BaseAgent
from .bus import (
    CommunicationBus,
    FaultKind,
    MessageHandler,
    ResilientBus,
    SendResult,
    Subscription,
)
from .lifecycle import (
    AgentConfig,
    AgentFactory,
    AgentLifecycleManager,
    ProcessSafetyNet,
    process_safety_net,
)
from .orchestrator import (
    DEFAULT_ROUTING_TABLE,
    MCP_TASK_TYPES,
    Orchestrator,
    OrchestratorConfig,
)
from .protocol import (
    create_error_response,
    create_message,
    create_message_id,
    create_response,
    create_task_id,
)

__all__ = [
    "DEFAULT_ROUTING_TABLE",
    "MCP_TASK_TYPES",
    "AgentConfig",
    "AgentFactory",
    "AgentLifecycleManager",
    "BaseAgent",
    "CommunicationBus",
    "FaultKind",
    "MessageHandler",
    "Orchestrator",
    "OrchestratorConfig",
    "ProcessSafetyNet",
    "ResilientBus",
    "SendResult",
    "Subscription",
    "create_error_response",
    "create_message",
    "create_message_id",
    "create_response",
    "create_task_id",
    "process_safety_net",
]
