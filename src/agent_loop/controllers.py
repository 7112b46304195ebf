"""Controllers for agent-loop CLI commands."""

from __future__ import annotations

import logging
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from agent_loop.agents.registry import create_agent
from agent_loop.config import Settings
from agent_loop.engine.engine import ExecutionEngine, RunSummary
from agent_loop.engine.errors import AgentLoopError, LockConflictError
from agent_loop.engine.events import EventChannel, PausedEvent
from agent_loop.engine.lock import InstanceLock, LockState
from agent_loop.engine.models import BlockDecision, EngineState, TaskStatus
from agent_loop.engine.permission_classifier import classify
from agent_loop.engine.session import SessionStore
from agent_loop.engine.timing import estimate_remaining_ms, format_duration_ms
from agent_loop.rendering import render_event, render_permission_block
from agent_loop.trackers.registry import create_tracker

logger = logging.getLogger(__name__)

ON_BLOCKED_CHOICES = ("skip", "done", "stop")
EXIT_CODE_FAILED = 1
EXIT_CODE_INTERRUPTED = 130
_DRAIN_POLL_SECONDS = 0.1


@dataclass(slots=True)
class RunCommand:
    workspace: Path | None = None
    max_iterations: int | None = None
    agent: str | None = None
    agent_command: str | None = None
    model: str | None = None
    tracker: str | None = None
    prd_path: Path | None = None
    epic: str | None = None
    delay_seconds: float | None = None
    timeout_seconds: float | None = None
    on_blocked: str = "skip"
    show_output: bool = False


@dataclass(slots=True)
class RunResult:
    """Final lines and process exit code of a headless run."""

    lines: list[str]
    exit_code: int
    summary: RunSummary | None = None


@dataclass(slots=True)
class StatusCommand:
    workspace: Path | None = None


@dataclass(slots=True)
class UnlockCommand:
    workspace: Path | None = None
    force: bool = False


@dataclass(slots=True)
class ClassifyCommand:
    text: str
    agent: str | None = None


@dataclass(slots=True)
class TasksCommand:
    workspace: Path | None = None
    tracker: str | None = None
    prd_path: Path | None = None
    epic: str | None = None
    include_completed: bool = True


@dataclass(slots=True)
class _RunOutcome:
    summary: RunSummary | None = None
    error: BaseException | None = None
    blocked_handled: set[int] = field(default_factory=set)


class AgentLoopCliController:
    """Coordinates engine runs and workspace inspection CLI operations."""

    def run(self, command: RunCommand, emit: Callable[[str], None]) -> RunResult:
        """Run the loop headlessly, echoing events through ``emit`` as they arrive."""

        if command.on_blocked not in ON_BLOCKED_CHOICES:
            raise ValueError(f"Unsupported --on-blocked value: {command.on_blocked!r}")
        settings = _settings_for_run(command)
        settings.validate()
        agent = create_agent(settings.agent.agent_id, **settings.agent_options())
        tracker = create_tracker(settings.tracker.tracker_id, settings.tracker_options())
        events = EventChannel(maxsize=settings.loop.event_queue_size)
        engine = ExecutionEngine(
            agent=agent,
            tracker=tracker,
            session_store=SessionStore(settings.state_dir),
            lock=InstanceLock(settings.state_dir),
            config=settings.engine_config(),
            events=events,
        )

        outcome = _RunOutcome()

        def _target() -> None:
            try:
                outcome.summary = engine.run()
            except BaseException as error:  # noqa: BLE001
                outcome.error = error

        worker = threading.Thread(target=_target, name="agent-loop-engine", daemon=True)

        def _on_signal(signal_name: str) -> None:
            if engine.interrupt():
                emit(f"Received {signal_name}, interrupting agent...")

        with _signal_handlers(_on_signal):
            worker.start()
            while worker.is_alive() or len(events):
                event = events.get(timeout=_DRAIN_POLL_SECONDS)
                if event is not None:
                    for line in render_event(event, show_output=command.show_output):
                        emit(line)
                    if isinstance(event, PausedEvent) and event.reason == "tracker_error":
                        emit("Tracker error in headless mode; stopping. Re-run to resume the session.")
                        engine.interrupt()
                # Polled once per drain tick; the engine waits on its condition until resolved.
                self._decide_block(engine, command.on_blocked, outcome, emit)
            worker.join()

        if outcome.error is not None:
            raise outcome.error
        summary = outcome.summary
        if summary is None:
            raise AgentLoopError("Engine stopped without a summary.")
        return RunResult(
            lines=_summary_lines(summary),
            exit_code=_exit_code(summary.state),
            summary=summary,
        )

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        session = SessionStore(settings.state_dir).load()
        lock_status = InstanceLock(settings.state_dir).check()

        lines: list[str] = []
        if session is None:
            lines.append(f"No session in {settings.state_dir}")
        else:
            lines.extend(
                [
                    f"Session: {session.session_id}",
                    f"Started: {session.started_at.isoformat()}",
                    f"Agent: {session.agent} Tracker: {session.tracker}",
                    f"Progress: {session.current_iteration}/{session.max_iterations} "
                    f"pause_state={session.pause_state.value}",
                    "Estimated remaining: "
                    + format_duration_ms(
                        estimate_remaining_ms(session.iterations, session.remaining_iterations),
                    ),
                ],
            )
            if session.iterations:
                last = session.iterations[-1]
                outcome = last.outcome.value if last.outcome else "open"
                lines.append(f"Last iteration: #{last.index} task={last.task.id} outcome={outcome}")
            if session.skipped_task_ids:
                lines.append(f"Skipped tasks: {', '.join(session.skipped_task_ids)}")

        if lock_status.state == LockState.FREE:
            lines.append("Lock: free")
        elif lock_status.record is None:
            lines.append("Lock: stale (unreadable lock file)")
        else:
            lines.append(f"Lock: {lock_status.state.value} pid={lock_status.record.pid}")
        return lines

    def unlock(self, command: UnlockCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        lock = InstanceLock(settings.state_dir)
        status = lock.check()
        if status.state == LockState.FREE:
            return [f"No lock file at {lock.path}"]
        if status.state == LockState.STALE:
            lock.clear_stale()
            pid = status.record.pid if status.record is not None else "unknown"
            return [f"Removed stale lock (pid={pid})"]
        pid = status.record.pid if status.record is not None else -1
        if not command.force:
            raise LockConflictError(pid, str(lock.path))
        lock.force_clear()
        logger.warning("Force-removed lock held by live pid=%d", pid)
        return [f"Force-removed lock held by running process pid={pid}"]

    def classify(self, command: ClassifyCommand) -> list[str]:
        result = classify(command.text, command.agent)
        lines = render_permission_block(result)
        if result.full_blocked_command and result.full_blocked_command != result.blocked_command:
            lines.append(f"full command: {result.full_blocked_command}")
        return lines

    def tasks(self, command: TasksCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        _apply_tracker_overrides(settings, command.tracker, command.prd_path, command.epic)
        tracker = create_tracker(settings.tracker.tracker_id, settings.tracker_options())
        tasks = tracker.get_tasks()
        if not command.include_completed:
            tasks = [task for task in tasks if task.status != TaskStatus.COMPLETED]
        if not tasks:
            return ["No tasks."]
        lines = []
        for task in tasks:
            priority = "-" if task.priority is None else str(task.priority)
            lines.append(f"{task.status.value:<10} p={priority:<4} {task.id}  {task.title}")
        return lines

    def _decide_block(
        self,
        engine: ExecutionEngine,
        on_blocked: str,
        outcome: _RunOutcome,
        emit: Callable[[str], None],
    ) -> None:
        pending = engine.pending_block
        if pending is None or pending.record.index in outcome.blocked_handled:
            return
        outcome.blocked_handled.add(pending.record.index)
        if on_blocked == "stop":
            emit(f"Task {pending.task.id} is blocked; stopping.")
            engine.interrupt()
            return
        decision = BlockDecision(on_blocked)
        emit(f"Task {pending.task.id} is blocked; decision={decision.value}")
        try:
            engine.resolve_block(decision)
        except RuntimeError:
            logger.info("Block on %s resolved before decision was sent", pending.task.id)


def _settings_for_run(command: RunCommand) -> Settings:
    settings = Settings.from_env(workspace=command.workspace)
    if command.max_iterations is not None:
        settings.loop.max_iterations = command.max_iterations
    if command.delay_seconds is not None:
        settings.loop.iteration_delay_seconds = command.delay_seconds
    if command.timeout_seconds is not None:
        settings.agent.timeout_seconds = command.timeout_seconds
    if command.agent:
        settings.agent.agent_id = command.agent.strip().lower()
    if command.agent_command:
        settings.agent.command = command.agent_command
    if command.model:
        settings.agent.model = command.model
    _apply_tracker_overrides(settings, command.tracker, command.prd_path, command.epic)
    return settings


def _apply_tracker_overrides(
    settings: Settings,
    tracker: str | None,
    prd_path: Path | None,
    epic: str | None,
) -> None:
    if tracker:
        settings.tracker.tracker_id = tracker.strip().lower()
    if prd_path is not None:
        settings.tracker.prd_path = (
            prd_path if prd_path.is_absolute() else settings.workspace / prd_path
        )
    if epic:
        settings.tracker.beads_epic = epic


def _summary_lines(summary: RunSummary) -> list[str]:
    outcomes = " ".join(f"{key}={value}" for key, value in sorted(summary.outcomes.items()))
    return [
        f"Run finished: state={summary.state.value} reason={summary.reason}",
        "Run summary: "
        f"iterations={summary.iterations_run} "
        f"progress={summary.current_iteration}/{summary.max_iterations} "
        f"completed={summary.tasks_completed} skipped={summary.tasks_skipped}"
        + (f" {outcomes}" if outcomes else ""),
    ]


def _exit_code(state: EngineState) -> int:
    if state == EngineState.COMPLETED:
        return 0
    if state == EngineState.INTERRUPTED:
        return EXIT_CODE_INTERRUPTED
    return EXIT_CODE_FAILED


@contextmanager
def _signal_handlers(on_signal: Callable[[str], None]) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM) if sys.platform != "win32" else None

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_signal(name)

    signal.signal(signal.SIGINT, _handler)
    if original_sigterm is not None:
        signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        if original_sigterm is not None:
            signal.signal(signal.SIGTERM, original_sigterm)
