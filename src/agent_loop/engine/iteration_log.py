"""Per-iteration log artifacts: metadata header followed by raw agent output."""

from __future__ import annotations

import re
from pathlib import Path

from agent_loop.engine.models import AgentOutput, IterationRecord

ITERATIONS_DIR_NAME = "iterations"
_SEPARATOR = "---"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class IterationLogWriter:
    """Creates deterministic iteration log paths under the state directory."""

    def __init__(self, state_dir: Path) -> None:
        self.root_dir = state_dir / ITERATIONS_DIR_NAME

    def path_for(self, index: int, task_id: str) -> Path:
        safe_task = _UNSAFE_CHARS.sub("_", task_id).strip("_") or "task"
        return self.root_dir / f"iteration-{index:03d}-{safe_task}.log"

    def write(self, record: IterationRecord, output: AgentOutput | None) -> Path:
        path = self.path_for(record.index, record.task.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        header = {
            "iteration": f"{record.index}/{record.max_iterations}",
            "task_id": record.task.id,
            "task_title": record.task.title,
            "started_at": record.started_at.isoformat(),
            "ended_at": record.ended_at.isoformat() if record.ended_at else "",
            "duration_ms": "" if record.duration_ms is None else str(record.duration_ms),
            "outcome": record.outcome.value if record.outcome else "",
        }
        if output is not None:
            header["exit_code"] = str(output.exit_code)
        if record.permission_block is not None and record.permission_block.is_blocked:
            header["blocked_operation"] = record.permission_block.operation or ""
            header["blocked_command"] = record.permission_block.full_blocked_command or ""

        lines = [f"{key}: {value}" for key, value in header.items()]
        lines.append(_SEPARATOR)
        lines.append("[stdout]")
        lines.append(output.stdout if output is not None else "")
        lines.append("[stderr]")
        lines.append(output.stderr if output is not None else "")
        path.write_text("\n".join(lines) + "\n", "utf-8")
        return path


def read_log_header(path: Path) -> dict[str, str]:
    """Parse the ``key: value`` header block of an iteration log."""

    header: dict[str, str] = {}
    for line in path.read_text("utf-8").splitlines():
        if line == _SEPARATOR:
            break
        key, _, value = line.partition(": ")
        header[key] = value
    return header
