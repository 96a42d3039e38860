"""Agent providers for coding-agent CLIs."""

from patchpilot.agents.protocol import (
    AgentAvailability,
    AgentEvent,
    AgentExecuteParams,
    AgentExecution,
    AgentProvider,
    AgentResult,
    EventChannel,
)
from patchpilot.agents.registry import AgentRegistry

__all__ = [
    "AgentAvailability",
    "AgentEvent",
    "AgentExecuteParams",
    "AgentExecution",
    "AgentProvider",
    "AgentRegistry",
    "AgentResult",
    "EventChannel",
]
