"""Tracker wrapping the ``bd`` (beads) issue CLI with optional ``bv`` triage."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_loop.engine.errors import TrackerError
from agent_loop.engine.models import Task, TaskDetail, TaskStatus

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "open": TaskStatus.PENDING,
    "in_progress": TaskStatus.ACTIVE,
    "closed": TaskStatus.COMPLETED,
    "blocked": TaskStatus.BLOCKED,
}
_COMMAND_TIMEOUT_SECONDS = 60
_DEFAULT_PRIORITY = 2


@dataclass(slots=True)
class CommandResult:
    """Outcome of one tracker sub-tool invocation."""

    returncode: int
    stdout: str
    stderr: str


CommandRunner = Callable[[Sequence[str], Path | None], CommandResult]


def run_command(args: Sequence[str], cwd: Path | None) -> CommandResult:
    """Run a sub-tool and capture its output."""

    completed = subprocess.run(  # noqa: S603
        list(args),
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=_COMMAND_TIMEOUT_SECONDS,
        check=False,
    )
    return CommandResult(
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


class BeadsTracker:
    """Issue tracker adapter over the beads CLI.

    When the ``bv`` triage tool is installed, next-task selection and its
    reasoning come from ``bv --robot-next``; otherwise ``bd ready`` ordering
    (priority, then id) is used.
    """

    tracker_id = "beads"

    def __init__(
        self,
        *,
        cwd: Path | None = None,
        executable: str = "bd",
        triage_executable: str = "bv",
        epic: str | None = None,
        runner: CommandRunner = run_command,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.cwd = cwd
        self.executable = executable
        self.triage_executable = triage_executable
        self.epic = epic
        self._runner = runner
        self._which = which
        self._reasoning: dict[str, str] = {}

    def detect(self) -> bool:
        if self._which(self.executable) is None:
            return False
        root = self.cwd or Path.cwd()
        return (root / ".beads").is_dir()

    def initialize(self, options: dict[str, Any]) -> None:
        if options.get("cwd") is not None:
            self.cwd = Path(options["cwd"])
        if options.get("epic"):
            self.epic = str(options["epic"])
        if options.get("executable"):
            self.executable = str(options["executable"])

    @property
    def triage_available(self) -> bool:
        return self._which(self.triage_executable) is not None

    def get_tasks(self) -> list[Task]:
        payload = self._bd_json("list", "--json", "--all", *self._epic_args())
        return [_to_task(item) for item in _as_issue_list(payload)]

    def get_next_task(self) -> Task | None:
        if self.triage_available:
            task = self._triage_next_task()
            if task is not None:
                return task
        payload = self._bd_json("ready", "--json", *self._epic_args())
        ready = [_to_task(item) for item in _as_issue_list(payload)]
        if not ready:
            return None
        ready.sort(key=lambda task: (_priority(task), task.id))
        return ready[0]

    def get_task_detail(self, task_id: str) -> TaskDetail:
        payload = self._bd_json("show", task_id, "--json")
        issues = _as_issue_list(payload)
        if not issues:
            raise TrackerError(f"Unknown beads issue: {task_id}", recoverable=False)
        issue = issues[0]
        blocked_by = [
            str(dep.get("id"))
            for dep in issue.get("dependencies") or []
            if isinstance(dep, dict)
            and dep.get("dependency_type", "blocks") == "blocks"
            and dep.get("status") != "closed"
        ]
        blocks = [
            str(dep.get("id"))
            for dep in issue.get("dependents") or []
            if isinstance(dep, dict) and dep.get("dependency_type", "blocks") == "blocks"
        ]
        criteria = issue.get("acceptance_criteria") or ""
        return TaskDetail(
            task=_to_task(issue),
            description=str(issue.get("description") or ""),
            acceptance_criteria=[line for line in str(criteria).splitlines() if line.strip()],
            blocked_by=blocked_by,
            blocks=blocks,
            metadata={
                key: issue[key] for key in ("issue_type", "assignee", "design") if issue.get(key)
            },
        )

    def complete_task(self, task_id: str, reason: str | None = None) -> None:
        self._bd("close", task_id, "--reason", reason or "Completed by agent loop")
        self._reasoning.pop(task_id, None)

    def is_complete(self) -> bool:
        tasks = self.get_tasks()
        return all(task.status == TaskStatus.COMPLETED for task in tasks)

    def sync(self) -> None:
        self._bd("sync")

    def get_task_reasoning(self, task_id: str) -> str | None:
        return self._reasoning.get(task_id)

    def is_task_blocked(self, task_id: str) -> bool:
        return bool(self.get_task_detail(task_id).blocked_by)

    def get_blockers(self, task_id: str) -> list[Task]:
        detail = self.get_task_detail(task_id)
        if not detail.blocked_by:
            return []
        by_id = {task.id: task for task in self.get_tasks()}
        return [by_id[dep] for dep in detail.blocked_by if dep in by_id]

    def _triage_next_task(self) -> Task | None:
        args = [self.triage_executable, "--robot-next"]
        try:
            result = self._runner(args, self.cwd)
        except (OSError, subprocess.SubprocessError) as error:
            logger.warning("Triage tool unavailable, using bd ready ordering: %s", error)
            return None
        if result.returncode != 0:
            logger.warning(
                "Triage tool failed (exit %d), using bd ready ordering: %s",
                result.returncode,
                result.stderr.strip(),
            )
            return None
        try:
            payload = json.loads(result.stdout or "null")
        except json.JSONDecodeError:
            logger.warning("Triage tool returned invalid JSON, using bd ready ordering")
            return None
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        task = _to_task(payload)
        reasons = payload.get("reasons") or []
        if isinstance(reasons, list) and reasons:
            self._reasoning[task.id] = "; ".join(str(reason) for reason in reasons)
        return task

    def _epic_args(self) -> list[str]:
        return ["--parent", self.epic] if self.epic else []

    def _bd(self, *args: str) -> CommandResult:
        command = [self.executable, *args]
        try:
            result = self._runner(command, self.cwd)
        except FileNotFoundError as error:
            raise TrackerError(f"beads CLI not found: {self.executable}", recoverable=False) from error
        except (OSError, subprocess.SubprocessError) as error:
            raise TrackerError(f"beads command failed: {' '.join(command)}: {error}") from error
        if result.returncode != 0:
            raise TrackerError(
                f"beads command failed (exit {result.returncode}): "
                f"{' '.join(command)}: {result.stderr.strip()}",
            )
        return result

    def _bd_json(self, *args: str) -> Any:
        result = self._bd(*args)
        try:
            return json.loads(result.stdout or "[]")
        except json.JSONDecodeError as error:
            raise TrackerError(f"beads returned invalid JSON for {args[0]}: {error}") from error


def _as_issue_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise TrackerError("beads returned unexpected payload shape")
    return [item for item in payload if isinstance(item, dict) and item.get("id")]


def _to_task(issue: dict[str, Any]) -> Task:
    priority = issue.get("priority")
    return Task(
        id=str(issue["id"]),
        title=str(issue.get("title") or issue["id"]),
        status=_STATUS_MAP.get(str(issue.get("status") or "open"), TaskStatus.PENDING),
        priority=priority if isinstance(priority, int) else None,
        labels=[str(label) for label in issue.get("labels") or []],
    )


def _priority(task: Task) -> int:
    return _DEFAULT_PRIORITY if task.priority is None else task.priority
