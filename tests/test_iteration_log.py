from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import allure

from agent_loop.engine.common import utc_now
from agent_loop.engine.iteration_log import IterationLogWriter, read_log_header
from agent_loop.engine.models import (
    AgentOutput,
    IterationOutcome,
    IterationRecord,
    PermissionBlockResult,
    Task,
)

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Iteration Logs"),
]


def test_log_paths_are_deterministic_and_filesystem_safe(tmp_path: Path) -> None:
    writer = IterationLogWriter(tmp_path)

    assert writer.path_for(3, "US-001") == tmp_path / "iterations" / "iteration-003-US-001.log"
    assert writer.path_for(12, "epic/1 two").name == "iteration-012-epic_1_two.log"
    assert writer.path_for(1, "///").name == "iteration-001-task.log"


def test_blocked_iteration_log_records_command(tmp_path: Path) -> None:
    writer = IterationLogWriter(tmp_path)
    started = utc_now()
    record = IterationRecord(
        index=2,
        max_iterations=4,
        task=Task(id="bd-7", title="Deploy"),
        started_at=started,
    ).finalize(
        ended_at=started + timedelta(seconds=2),
        outcome=IterationOutcome.BLOCKED,
        log_file=str(writer.path_for(2, "bd-7")),
        permission_block=PermissionBlockResult(
            is_blocked=True,
            operation="bash command",
            message="Claude wants to run: make deploy",
            blocked_command="make deploy",
            full_blocked_command="make deploy",
        ),
    )
    output = AgentOutput(
        stdout="Claude wants to run: make deploy\n",
        stderr="warn\n",
        exit_code=0,
        duration_ms=2000,
    )

    path = writer.write(record, output)

    header = read_log_header(path)
    assert header["iteration"] == "2/4"
    assert header["task_title"] == "Deploy"
    assert header["duration_ms"] == "2000"
    assert header["outcome"] == "blocked"
    assert header["blocked_operation"] == "bash command"
    assert header["blocked_command"] == "make deploy"
    body = path.read_text("utf-8")
    assert "[stdout]\nClaude wants to run: make deploy" in body
    assert "[stderr]\nwarn" in body
