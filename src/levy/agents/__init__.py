"""Reference agents and the factory catalog used by the runtime."""

from levy.core.lifecycle import AgentFactory

from .echo import EchoAgent, build_echo_agent

AGENT_CATALOG: dict[str, AgentFactory] = {
    "echo": build_echo_agent,
}

__all__ = ["AGENT_CATALOG", "EchoAgent", "build_echo_agent"]
