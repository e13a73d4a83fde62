"""Echo agent: returns its task parameters as the result.

Used by the demo, the resilience CLI and tests. Two control parameters
shape its behavior: ``delay`` (seconds to work before answering, checking
for cancellation along the way) and ``fail`` (raise instead of answering).
"""

import asyncio
from typing import Any

from levy.core.agent import BaseAgent
from levy.core.bus import CommunicationBus, ResilientBus
from levy.core.lifecycle import AgentConfig
from levy.schemas.messages import Task

# Granularity of cancellation checkpoints while delaying
_CHECKPOINT_INTERVAL = 0.01


class EchoAgent(BaseAgent):
    """Agent whose task result is a copy of the task parameters."""

    async def execute_task(self, task: Task) -> Any:
        delay = float(task.parameters.get("delay", 0.0))
        remaining = delay
        while remaining > 0 and not self.is_cancelled(task.id):
            step = min(_CHECKPOINT_INTERVAL, remaining)
            await asyncio.sleep(step)
            remaining -= step

        if task.parameters.get("fail"):
            raise RuntimeError(task.parameters.get("error", "echo failure requested"))

        return dict(task.parameters)


def build_echo_agent(
    config: AgentConfig, bus: CommunicationBus | ResilientBus
) -> EchoAgent:
    """Agent factory for the lifecycle manager."""
    return EchoAgent(
        config.agent_id,
        bus,
        capabilities=config.capabilities or ["echo"],
        agent_type=config.resolved_type,
        status_interval=float(config.settings.get("status_interval", 30.0)),
        settings=config.settings,
    )
