"""Tracker adapter capability contract."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from agent_loop.engine.models import Task, TaskDetail


@runtime_checkable
class TrackerAdapter(Protocol):
    """Protocol implemented by issue-tracking backends.

    ``get_next_task`` is authoritative: the engine runs whatever it returns
    and never re-ranks.
    """

    tracker_id: str

    def detect(self) -> bool:
        """Report whether the backing store or tool is present."""

    def initialize(self, options: dict[str, Any]) -> None:
        """Apply already-validated adapter options."""

    def get_tasks(self) -> list[Task]:
        """Enumerate tasks in scope."""

    def get_next_task(self) -> Task | None:
        """Select the next task to work on, or ``None`` when nothing is ready."""

    def get_task_detail(self, task_id: str) -> TaskDetail:
        """Fetch full detail for one task."""

    def complete_task(self, task_id: str, reason: str | None = None) -> None:
        """Mark a task completed."""

    def is_complete(self) -> bool:
        """Whether every task in scope is completed."""

    def sync(self) -> None:
        """Push local changes to the source of truth. No-op without remote state."""


@runtime_checkable
class DependencyAwareTracker(Protocol):
    """Optional extension for trackers that schedule by dependencies."""

    def get_task_reasoning(self, task_id: str) -> str | None:
        """Explain why this task was selected."""

    def is_task_blocked(self, task_id: str) -> bool:
        """Whether unfinished dependencies block this task."""

    def get_blockers(self, task_id: str) -> list[Task]:
        """Unfinished tasks this task depends on."""


@runtime_checkable
class SkippableTracker(Protocol):
    """Optional extension for trackers with native skip semantics."""

    def skip_task(self, task_id: str) -> None:
        """Abandon a task so it is not selected again."""
