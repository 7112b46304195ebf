"""String-id registry mapping agent names to adapter constructors."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from agent_loop.agents.base import AgentAdapter
from agent_loop.agents.cli_agent import (
    ClaudeAgentAdapter,
    CliAgentAdapter,
    CodexAgentAdapter,
    DroidAgentAdapter,
)
from agent_loop.engine.errors import UnknownAdapterError

AgentFactory = Callable[..., AgentAdapter]

_AGENT_FACTORIES: dict[str, AgentFactory] = {
    "claude": ClaudeAgentAdapter,
    "codex": CodexAgentAdapter,
    "droid": DroidAgentAdapter,
    "command": CliAgentAdapter,
}


def register_agent(agent_id: str, factory: AgentFactory) -> None:
    """Register an agent constructor under a normalized id."""

    normalized = _normalize(agent_id)
    if not normalized:
        raise ValueError("Agent id must be a non-empty string.")
    _AGENT_FACTORIES[normalized] = factory


def supported_agents() -> tuple[str, ...]:
    return tuple(sorted(_AGENT_FACTORIES))


def create_agent(agent_id: str, **options: Any) -> AgentAdapter:
    """Construct the adapter registered for ``agent_id`` with keyword options."""

    normalized = _normalize(agent_id)
    try:
        factory = _AGENT_FACTORIES[normalized]
    except KeyError as error:
        raise UnknownAdapterError(
            f"Unsupported agent {agent_id!r}. Expected one of: {', '.join(supported_agents())}",
        ) from error
    return factory(**{key: value for key, value in options.items() if value is not None})


def _normalize(agent_id: str) -> str:
    return agent_id.strip().lower()
