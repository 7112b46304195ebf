"""Domain models for the iteration loop, tasks, and agent execution."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Tracker-reported task lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class IterationOutcome(str, Enum):
    """Final result of one loop iteration."""

    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"
    INTERRUPTED = "interrupted"


class PauseState(str, Enum):
    """Persisted pause state of a session."""

    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"


class EngineState(str, Enum):
    """Execution engine state machine."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    INTERRUPTING = "interrupting"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {EngineState.COMPLETED, EngineState.FAILED, EngineState.INTERRUPTED},
)


class BlockDecision(str, Enum):
    """External decision for a task stalled on a permission prompt."""

    DONE = "done"
    SKIP = "skip"
    ALTERNATIVE = "alternative"


class AlternativePolicy(str, Enum):
    """How alternative instructions combine across repeated blocks of one task."""

    ACCUMULATE = "accumulate"
    RESET = "reset"


@dataclass(slots=True)
class Task:
    """Tracker task snapshot."""

    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    priority: int | None = None
    labels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "priority": self.priority,
            "labels": list(self.labels),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            status=TaskStatus(payload.get("status", TaskStatus.PENDING.value)),
            priority=payload.get("priority"),
            labels=[str(label) for label in payload.get("labels") or []],
        )


@dataclass(slots=True)
class TaskDetail:
    """Full task description fetched on demand for one iteration."""

    task: Task
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.task.id

    @property
    def title(self) -> str:
        return self.task.title


@dataclass(slots=True)
class AgentOutput:
    """Captured result of one agent execution."""

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False
    interrupted: bool = False

    @property
    def combined(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


@dataclass(slots=True)
class PermissionBlockResult:
    """Classifier verdict on whether the agent is stalled awaiting permission."""

    is_blocked: bool
    operation: str | None = None
    message: str | None = None
    blocked_command: str | None = None
    full_blocked_command: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_blocked": self.is_blocked,
            "operation": self.operation,
            "message": self.message,
            "blocked_command": self.blocked_command,
            "full_blocked_command": self.full_blocked_command,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PermissionBlockResult:
        return cls(
            is_blocked=bool(payload.get("is_blocked", False)),
            operation=payload.get("operation"),
            message=payload.get("message"),
            blocked_command=payload.get("blocked_command"),
            full_blocked_command=payload.get("full_blocked_command"),
        )


@dataclass(slots=True, frozen=True)
class IterationRecord:
    """One iteration entry of the session history.

    Records are created open (``ended_at`` is ``None``) and replaced by a
    finalized copy through :meth:`finalize`; they are never mutated.
    """

    index: int
    max_iterations: int
    task: Task
    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: int | None = None
    outcome: IterationOutcome | None = None
    log_file: str | None = None
    exit_code: int | None = None
    permission_block: PermissionBlockResult | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def finalize(  # noqa: PLR0913
        self,
        *,
        ended_at: datetime,
        outcome: IterationOutcome,
        log_file: str | None,
        exit_code: int | None = None,
        permission_block: PermissionBlockResult | None = None,
    ) -> IterationRecord:
        if not self.is_open:
            raise ValueError(f"Iteration {self.index} is already finalized.")
        duration_ms = max(0, int((ended_at - self.started_at).total_seconds() * 1000))
        return replace(
            self,
            ended_at=ended_at,
            duration_ms=duration_ms,
            outcome=outcome,
            log_file=log_file,
            exit_code=exit_code,
            permission_block=permission_block,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "max_iterations": self.max_iterations,
            "task": self.task.to_dict(),
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome.value if self.outcome else None,
            "log_file": self.log_file,
            "exit_code": self.exit_code,
            "permission_block": (
                self.permission_block.to_dict() if self.permission_block else None
            ),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IterationRecord:
        ended_at = payload.get("ended_at")
        outcome = payload.get("outcome")
        block = payload.get("permission_block")
        return cls(
            index=int(payload["index"]),
            max_iterations=int(payload["max_iterations"]),
            task=Task.from_dict(payload["task"]),
            started_at=datetime.fromisoformat(payload["started_at"]),
            ended_at=datetime.fromisoformat(ended_at) if ended_at else None,
            duration_ms=payload.get("duration_ms"),
            outcome=IterationOutcome(outcome) if outcome else None,
            log_file=payload.get("log_file"),
            exit_code=payload.get("exit_code"),
            permission_block=PermissionBlockResult.from_dict(block) if block else None,
        )


@dataclass(slots=True)
class Session:
    """Durable loop progress keyed to one workspace."""

    session_id: str
    started_at: datetime
    max_iterations: int
    agent: str
    tracker: str
    current_iteration: int = 0
    pause_state: PauseState = PauseState.RUNNING
    iterations: list[IterationRecord] = field(default_factory=list)
    tracker_state: dict[str, Any] | None = None
    skipped_task_ids: list[str] = field(default_factory=list)
    pending_alternatives: dict[str, list[str]] = field(default_factory=dict)

    @property
    def remaining_iterations(self) -> int:
        return max(0, self.max_iterations - self.current_iteration)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "current_iteration": self.current_iteration,
            "max_iterations": self.max_iterations,
            "pause_state": self.pause_state.value,
            "agent": self.agent,
            "tracker": self.tracker,
            "iterations": [record.to_dict() for record in self.iterations],
            "tracker_state": self.tracker_state,
            "skipped_task_ids": list(self.skipped_task_ids),
            "pending_alternatives": {
                task_id: list(items) for task_id, items in self.pending_alternatives.items()
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Session:
        return cls(
            session_id=str(payload["session_id"]),
            started_at=datetime.fromisoformat(payload["started_at"]),
            current_iteration=int(payload.get("current_iteration", 0)),
            max_iterations=int(payload["max_iterations"]),
            pause_state=PauseState(payload.get("pause_state", PauseState.RUNNING.value)),
            agent=str(payload.get("agent", "")),
            tracker=str(payload.get("tracker", "")),
            iterations=[IterationRecord.from_dict(item) for item in payload.get("iterations", [])],
            tracker_state=payload.get("tracker_state"),
            skipped_task_ids=[str(item) for item in payload.get("skipped_task_ids", [])],
            pending_alternatives={
                str(task_id): [str(item) for item in items]
                for task_id, items in (payload.get("pending_alternatives") or {}).items()
            },
        )


@dataclass(slots=True)
class LockRecord:
    """Workspace exclusivity marker written at run start."""

    pid: int
    start_time: datetime
    session_id: str
    agent: str
    tracker: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "start_time": self.start_time.isoformat(),
            "session_id": self.session_id,
            "agent": self.agent,
            "tracker": self.tracker,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LockRecord:
        return cls(
            pid=int(payload["pid"]),
            start_time=datetime.fromisoformat(payload["start_time"]),
            session_id=str(payload.get("session_id", "")),
            agent=str(payload.get("agent", "")),
            tracker=str(payload.get("tracker", "")),
        )
