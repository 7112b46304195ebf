"""Runtime configuration for the agent work loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_loop.engine.engine import EngineConfig
from agent_loop.engine.models import AlternativePolicy

DEFAULT_STATE_DIR = ".agent-loop"


@dataclass(slots=True)
class LoopSettings:
    """Iteration budget, pacing and recovery settings."""

    max_iterations: int = 10
    iteration_delay_seconds: float = 1.0
    require_completion_signal: bool = True
    alternative_policy: AlternativePolicy = AlternativePolicy.ACCUMULATE
    clear_stale_lock: bool = True
    event_queue_size: int = 1_000


@dataclass(slots=True)
class AgentSettings:
    """Agent backend settings."""

    agent_id: str = "claude"
    command: str | None = None
    model: str | None = None
    timeout_seconds: float = 1_800.0
    graceful_interrupt_seconds: float = 5.0


@dataclass(slots=True)
class TrackerSettings:
    """Tracker backend settings."""

    tracker_id: str = "json"
    prd_path: Path = Path("prd.json")
    beads_epic: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    workspace: Path = field(default_factory=Path.cwd)
    state_dir: Path = Path(DEFAULT_STATE_DIR)
    loop: LoopSettings = field(default_factory=LoopSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    tracker: TrackerSettings = field(default_factory=TrackerSettings)

    @classmethod
    def from_env(cls, workspace: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local runs."""

        root = (workspace or Path.cwd()).resolve()
        return cls(
            workspace=root,
            state_dir=_under(root, os.getenv("AGENT_LOOP_STATE_DIR", DEFAULT_STATE_DIR)),
            loop=LoopSettings(
                max_iterations=_env_int("AGENT_LOOP_MAX_ITERATIONS", 10),
                iteration_delay_seconds=_env_float("AGENT_LOOP_ITERATION_DELAY_SECONDS", 1.0),
                require_completion_signal=_env_bool(
                    "AGENT_LOOP_REQUIRE_COMPLETION_SIGNAL",
                    default=True,
                ),
                alternative_policy=_env_alternative_policy(),
                clear_stale_lock=_env_bool("AGENT_LOOP_CLEAR_STALE_LOCK", default=True),
                event_queue_size=_env_int("AGENT_LOOP_EVENT_QUEUE_SIZE", 1000),
            ),
            agent=AgentSettings(
                agent_id=os.getenv("AGENT_LOOP_AGENT", "claude").strip().lower(),
                command=_env_optional("AGENT_LOOP_AGENT_COMMAND"),
                model=_env_optional("AGENT_LOOP_AGENT_MODEL"),
                timeout_seconds=_env_float("AGENT_LOOP_AGENT_TIMEOUT_SECONDS", 1800.0),
                graceful_interrupt_seconds=_env_float(
                    "AGENT_LOOP_GRACEFUL_INTERRUPT_SECONDS",
                    5.0,
                ),
            ),
            tracker=TrackerSettings(
                tracker_id=os.getenv("AGENT_LOOP_TRACKER", "json").strip().lower(),
                prd_path=_under(root, os.getenv("AGENT_LOOP_PRD_PATH", "prd.json")),
                beads_epic=_env_optional("AGENT_LOOP_BEADS_EPIC"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.loop.max_iterations <= 0:
            raise ValueError("AGENT_LOOP_MAX_ITERATIONS must be > 0.")
        if self.loop.iteration_delay_seconds < 0:
            raise ValueError("AGENT_LOOP_ITERATION_DELAY_SECONDS must be >= 0.")
        if self.loop.event_queue_size <= 0:
            raise ValueError("AGENT_LOOP_EVENT_QUEUE_SIZE must be > 0.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("AGENT_LOOP_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.graceful_interrupt_seconds < 0:
            raise ValueError("AGENT_LOOP_GRACEFUL_INTERRUPT_SECONDS must be >= 0.")
        if not self.agent.agent_id:
            raise ValueError("AGENT_LOOP_AGENT must not be empty.")
        if self.agent.agent_id == "command" and not self.agent.command:
            raise ValueError("AGENT_LOOP_AGENT_COMMAND is required when AGENT_LOOP_AGENT=command.")
        if not self.tracker.tracker_id:
            raise ValueError("AGENT_LOOP_TRACKER must not be empty.")

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            max_iterations=self.loop.max_iterations,
            iteration_delay_seconds=self.loop.iteration_delay_seconds,
            agent_timeout_seconds=self.agent.timeout_seconds,
            require_completion_signal=self.loop.require_completion_signal,
            alternative_policy=self.loop.alternative_policy,
            clear_stale_lock=self.loop.clear_stale_lock,
            model=self.agent.model,
            cwd=self.workspace,
        )

    def agent_options(self) -> dict[str, Any]:
        return {
            "command": self.agent.command,
            "model": self.agent.model,
            "graceful_interrupt_seconds": self.agent.graceful_interrupt_seconds,
        }

    def tracker_options(self) -> dict[str, Any]:
        if self.tracker.tracker_id == "beads":
            return {"cwd": self.workspace, "epic": self.tracker.beads_epic}
        return {"path": self.tracker.prd_path}


def _under(root: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else root / path


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error


def _env_alternative_policy() -> AlternativePolicy:
    raw = os.getenv("AGENT_LOOP_ALTERNATIVE_POLICY", AlternativePolicy.ACCUMULATE.value)
    try:
        return AlternativePolicy(raw.strip().lower())
    except ValueError as error:
        raise ValueError(
            f"Invalid AGENT_LOOP_ALTERNATIVE_POLICY: {raw!r}. Expected accumulate or reset.",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
