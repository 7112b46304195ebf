from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

import allure
import pytest

from agent_loop.engine.errors import TrackerError
from agent_loop.engine.models import TaskStatus
from agent_loop.trackers.beads_tracker import BeadsTracker, CommandResult

pytestmark = [
    allure.epic("Tracker Adapters"),
    allure.feature("Beads Tracker"),
]

_ISSUES = [
    {"id": "bd-2", "title": "Second", "status": "open", "priority": 1},
    {"id": "bd-1", "title": "First", "status": "open", "priority": 1, "labels": ["api"]},
    {"id": "bd-3", "title": "Done", "status": "closed", "priority": 0},
]


class _FakeRunner:
    def __init__(self, responses: dict[tuple[str, ...], CommandResult | Exception]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, ...]] = []

    def __call__(self, args: Sequence[str], cwd: Path | None) -> CommandResult:
        key = tuple(args)
        self.calls.append(key)
        response = self.responses.get(key, CommandResult(returncode=0, stdout="[]", stderr=""))
        if isinstance(response, Exception):
            raise response
        return response


def _ok(payload: object) -> CommandResult:
    return CommandResult(returncode=0, stdout=json.dumps(payload), stderr="")


def _which(*available: str):
    return lambda name: f"/usr/bin/{name}" if name in available else None


def test_detect_requires_cli_and_beads_dir(tmp_path: Path) -> None:
    tracker = BeadsTracker(cwd=tmp_path, runner=_FakeRunner({}), which=_which("bd"))
    assert tracker.detect() is False

    (tmp_path / ".beads").mkdir()
    assert tracker.detect() is True

    missing_cli = BeadsTracker(cwd=tmp_path, runner=_FakeRunner({}), which=_which())
    assert missing_cli.detect() is False


def test_get_tasks_maps_statuses() -> None:
    runner = _FakeRunner({("bd", "list", "--json", "--all"): _ok(_ISSUES)})
    tracker = BeadsTracker(runner=runner, which=_which("bd"))

    tasks = tracker.get_tasks()

    assert [(task.id, task.status) for task in tasks] == [
        ("bd-2", TaskStatus.PENDING),
        ("bd-1", TaskStatus.PENDING),
        ("bd-3", TaskStatus.COMPLETED),
    ]
    assert tasks[1].labels == ["api"]
    assert tracker.is_complete() is False


def test_ready_ordering_without_triage_tool() -> None:
    runner = _FakeRunner({("bd", "ready", "--json"): _ok(_ISSUES[:2])})
    tracker = BeadsTracker(runner=runner, which=_which("bd"))

    task = tracker.get_next_task()

    assert task is not None
    assert task.id == "bd-1"
    assert tracker.get_task_reasoning("bd-1") is None


def test_triage_tool_selection_and_reasoning() -> None:
    runner = _FakeRunner(
        {
            ("bv", "--robot-next"): _ok(
                {
                    "id": "bd-2",
                    "title": "Second",
                    "status": "open",
                    "reasons": ["unblocks 3 issues", "high PageRank"],
                },
            ),
        },
    )
    tracker = BeadsTracker(runner=runner, which=_which("bd", "bv"))

    task = tracker.get_next_task()

    assert task is not None
    assert task.id == "bd-2"
    assert tracker.get_task_reasoning("bd-2") == "unblocks 3 issues; high PageRank"
    assert ("bd", "ready", "--json") not in runner.calls


def test_triage_failure_falls_back_to_ready() -> None:
    runner = _FakeRunner(
        {
            ("bv", "--robot-next"): CommandResult(returncode=2, stdout="", stderr="no graph"),
            ("bd", "ready", "--json", "--parent", "epic-1"): _ok([_ISSUES[0]]),
        },
    )
    tracker = BeadsTracker(runner=runner, which=_which("bd", "bv"), epic="epic-1")

    task = tracker.get_next_task()

    assert task is not None
    assert task.id == "bd-2"


def test_task_detail_maps_dependencies() -> None:
    runner = _FakeRunner(
        {
            ("bd", "show", "bd-5", "--json"): _ok(
                [
                    {
                        "id": "bd-5",
                        "title": "Ship",
                        "status": "in_progress",
                        "description": "Ship it",
                        "acceptance_criteria": "Tests pass\n\nDocs updated",
                        "dependencies": [
                            {"id": "bd-4", "status": "open", "dependency_type": "blocks"},
                            {"id": "bd-3", "status": "closed", "dependency_type": "blocks"},
                            {"id": "bd-9", "status": "open", "dependency_type": "related"},
                        ],
                        "dependents": [{"id": "bd-6", "dependency_type": "blocks"}],
                        "issue_type": "feature",
                    },
                ],
            ),
        },
    )
    tracker = BeadsTracker(runner=runner, which=_which("bd"))

    detail = tracker.get_task_detail("bd-5")

    assert detail.task.status == TaskStatus.ACTIVE
    assert detail.acceptance_criteria == ["Tests pass", "Docs updated"]
    assert detail.blocked_by == ["bd-4"]
    assert detail.blocks == ["bd-6"]
    assert detail.metadata == {"issue_type": "feature"}
    assert tracker.is_task_blocked("bd-5") is True


def test_complete_and_sync_issue_commands() -> None:
    runner = _FakeRunner({})
    tracker = BeadsTracker(runner=runner, which=_which("bd"))

    tracker.complete_task("bd-1", "Completed by agent")
    tracker.sync()

    assert runner.calls == [
        ("bd", "close", "bd-1", "--reason", "Completed by agent"),
        ("bd", "sync"),
    ]


def test_command_failure_is_recoverable() -> None:
    runner = _FakeRunner(
        {("bd", "sync"): CommandResult(returncode=1, stdout="", stderr="remote unreachable")},
    )
    tracker = BeadsTracker(runner=runner, which=_which("bd"))

    with pytest.raises(TrackerError, match="remote unreachable") as error:
        tracker.sync()

    assert error.value.recoverable is True


def test_missing_cli_is_unrecoverable() -> None:
    runner = _FakeRunner({("bd", "sync"): FileNotFoundError("bd")})
    tracker = BeadsTracker(runner=runner, which=_which())

    with pytest.raises(TrackerError) as error:
        tracker.sync()

    assert error.value.recoverable is False


def test_initialize_applies_options(tmp_path: Path) -> None:
    tracker = BeadsTracker(runner=_FakeRunner({}), which=_which("bd"))

    tracker.initialize({"cwd": tmp_path, "epic": "epic-7", "executable": "beads"})

    assert tracker.cwd == tmp_path
    assert tracker.epic == "epic-7"
    assert tracker.executable == "beads"
