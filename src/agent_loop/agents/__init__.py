"""Agent adapter implementations."""

from agent_loop.agents.base import (
    AgentAdapter,
    AgentCapabilities,
    AgentExecuteContext,
    AgentFileContext,
    CancellationToken,
)
from agent_loop.agents.cli_agent import (
    AgentCommandError,
    ClaudeAgentAdapter,
    CliAgentAdapter,
    CodexAgentAdapter,
    DroidAgentAdapter,
)
from agent_loop.agents.registry import create_agent, register_agent, supported_agents

__all__ = [
    "AgentAdapter",
    "AgentCapabilities",
    "AgentCommandError",
    "AgentExecuteContext",
    "AgentFileContext",
    "CancellationToken",
    "ClaudeAgentAdapter",
    "CliAgentAdapter",
    "CodexAgentAdapter",
    "DroidAgentAdapter",
    "create_agent",
    "register_agent",
    "supported_agents",
]
