"""Plain-text rendering of engine events for the headless CLI."""

from __future__ import annotations

from agent_loop.engine.events import (
    AgentOutputEvent,
    EngineEvent,
    ErrorEvent,
    IterationEndEvent,
    IterationStartEvent,
    PausedEvent,
    ResumedEvent,
    TaskCompleteEvent,
    TaskReasoningEvent,
    TrackerSyncedEvent,
)
from agent_loop.engine.models import PermissionBlockResult
from agent_loop.engine.permission_classifier import describe_operation
from agent_loop.engine.timing import format_duration_ms


def render_event(event: EngineEvent, *, show_output: bool = False) -> list[str]:  # noqa: PLR0911
    """Render one event as zero or more output lines.

    Unknown event kinds render nothing, so newer engines stay compatible.
    """

    if isinstance(event, IterationStartEvent):
        return [f"[{event.index}/{event.max_iterations}] {event.task.id}: {event.task.title}"]
    if isinstance(event, TaskReasoningEvent):
        return [f"  selected because: {event.reasoning}"]
    if isinstance(event, AgentOutputEvent):
        if not show_output:
            return []
        prefix = "  | " if event.stream == "stdout" else "  ! "
        return [f"{prefix}{line}" for line in event.chunk.rstrip("\n").splitlines()]
    if isinstance(event, IterationEndEvent):
        record = event.record
        outcome = record.outcome.value if record.outcome else "unknown"
        lines = [
            f"  outcome={outcome} exit_code={record.exit_code} "
            f"duration={format_duration_ms(record.duration_ms)} "
            f"remaining~{format_duration_ms(event.estimated_remaining_ms)}",
        ]
        if event.permission_block is not None:
            lines.extend(render_permission_block(event.permission_block, indent="  "))
        if record.log_file:
            lines.append(f"  log: {record.log_file}")
        return lines
    if isinstance(event, TaskCompleteEvent):
        suffix = f" ({event.reason})" if event.reason else ""
        return [f"  task {event.task.id} completed{suffix}"]
    if isinstance(event, ErrorEvent):
        label = "recoverable error" if event.recoverable else "error"
        return [f"{label}: {event.message}"]
    if isinstance(event, PausedEvent):
        return [f"Paused at iteration {event.current_iteration} ({event.reason})"]
    if isinstance(event, ResumedEvent):
        return [f"Resumed at iteration {event.current_iteration}"]
    if isinstance(event, TrackerSyncedEvent):
        return [f"Tracker {event.tracker} synced"]
    return []


def render_permission_block(result: PermissionBlockResult, *, indent: str = "") -> list[str]:
    if not result.is_blocked:
        return [f"{indent}blocked: no"]
    why, affects = describe_operation(result.operation)
    lines = [
        f"{indent}blocked: yes",
        f"{indent}operation: {result.operation}",
        f"{indent}message: {result.message}",
    ]
    if result.blocked_command:
        lines.append(f"{indent}command: {result.blocked_command}")
    lines.append(f"{indent}why: {why}")
    lines.append(f"{indent}affects: {affects}")
    return lines
