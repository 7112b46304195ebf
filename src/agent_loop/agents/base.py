"""Agent adapter capability contract."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from agent_loop.engine.models import AgentOutput

OutputCallback = Callable[[str, str], None]

EXIT_CODE_TIMEOUT = 124
EXIT_CODE_INTERRUPTED = 130
EXIT_CODE_SPAWN_FAILED = 127


@dataclass(slots=True, frozen=True)
class AgentCapabilities:
    """Static capability descriptor declared by each agent backend."""

    supports_streaming: bool = True
    supports_interrupt: bool = True
    supports_file_context: bool = False
    supports_structured_output: bool = False
    output_format: str = "text"


class CancellationToken:
    """Thread-safe cancellation flag shared between engine and adapter."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


@dataclass(slots=True)
class AgentFileContext:
    """A file the agent should look at while working on the prompt."""

    path: Path
    note: str | None = None


@dataclass(slots=True)
class AgentExecuteContext:
    """Inputs required to run one agent execution."""

    prompt: str
    timeout_seconds: float
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    files: list[AgentFileContext] = field(default_factory=list)
    model: str | None = None
    cwd: Path | None = None
    on_output: OutputCallback | None = None


@runtime_checkable
class AgentAdapter(Protocol):
    """Protocol implemented by agent backends."""

    agent_id: str
    capabilities: AgentCapabilities

    def detect(self) -> bool:
        """Report whether the backend is installed. Must not start work."""

    def execute(self, context: AgentExecuteContext) -> AgentOutput:
        """Run the prompt and return captured output; never raise on process errors."""

    def interrupt(self) -> None:
        """Ask the in-flight execution to stop. No-op when nothing is running."""
