"""Iteration loop driving an agent through tracker tasks."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from agent_loop.agents.base import (
    EXIT_CODE_SPAWN_FAILED,
    AgentAdapter,
    AgentExecuteContext,
    AgentFileContext,
    CancellationToken,
)
from agent_loop.engine.common import utc_now
from agent_loop.engine.errors import AdapterUnavailableError, TrackerError
from agent_loop.engine.events import (
    AgentOutputEvent,
    EngineEvent,
    ErrorEvent,
    EventChannel,
    IterationEndEvent,
    IterationStartEvent,
    PausedEvent,
    ResumedEvent,
    TaskCompleteEvent,
    TaskReasoningEvent,
    TaskStartEvent,
    TrackerSyncedEvent,
)
from agent_loop.engine.iteration_log import IterationLogWriter
from agent_loop.engine.lock import InstanceLock
from agent_loop.engine.models import (
    AgentOutput,
    AlternativePolicy,
    BlockDecision,
    EngineState,
    IterationOutcome,
    IterationRecord,
    PauseState,
    PermissionBlockResult,
    Session,
    Task,
    TaskDetail,
    TaskStatus,
)
from agent_loop.engine.permission_classifier import classify_agent_output
from agent_loop.engine.prompt import (
    PromptBuilder,
    append_alternatives,
    has_completion_signal,
    render_default_prompt,
)
from agent_loop.engine.session import SessionStore
from agent_loop.engine.timing import estimate_remaining_ms
from agent_loop.trackers.base import DependencyAwareTracker, SkippableTracker, TrackerAdapter

logger = logging.getLogger(__name__)

_COMPLETION_REASON = "Completed by agent"
_MARKED_DONE_REASON = "Marked done after permission block"
_PAUSE_REASON_REQUESTED = "requested"
_PAUSE_REASON_TRACKER_ERROR = "tracker_error"


@dataclass(slots=True)
class EngineConfig:
    """Loop tuning knobs resolved from settings."""

    max_iterations: int = 10
    iteration_delay_seconds: float = 1.0
    agent_timeout_seconds: float = 1800.0
    require_completion_signal: bool = True
    alternative_policy: AlternativePolicy = AlternativePolicy.ACCUMULATE
    clear_stale_lock: bool = True
    model: str | None = None
    cwd: Path | None = None
    files: list[AgentFileContext] = field(default_factory=list)

    def validate(self) -> None:
        if self.max_iterations <= 0:
            raise ValueError("max_iterations must be > 0.")
        if self.iteration_delay_seconds < 0:
            raise ValueError("iteration_delay_seconds must be >= 0.")
        if self.agent_timeout_seconds <= 0:
            raise ValueError("agent_timeout_seconds must be > 0.")


@dataclass(slots=True)
class PendingBlock:
    """Blocked iteration awaiting an external decision."""

    task: Task
    record: IterationRecord
    classification: PermissionBlockResult


@dataclass(slots=True)
class RunSummary:
    """Aggregate run counters for CLI reporting."""

    state: EngineState
    reason: str
    session_id: str | None = None
    iterations_run: int = 0
    current_iteration: int = 0
    max_iterations: int = 0
    tasks_completed: int = 0
    tasks_skipped: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)


class ExecutionEngine:
    """Runs select-task, execute-agent, record-outcome cycles until a terminal state.

    ``run`` executes in the caller's thread. ``pause``, ``resume``,
    ``interrupt`` and ``resolve_block`` may be called from any other thread.
    Events go to the bounded :class:`EventChannel`; the engine never waits
    for a consumer.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        agent: AgentAdapter,
        tracker: TrackerAdapter,
        session_store: SessionStore,
        lock: InstanceLock,
        config: EngineConfig | None = None,
        events: EventChannel | None = None,
        log_writer: IterationLogWriter | None = None,
        prompt_builder: PromptBuilder = render_default_prompt,
    ) -> None:
        self.agent = agent
        self.tracker = tracker
        self.session_store = session_store
        self.lock = lock
        self.config = config or EngineConfig()
        self.config.validate()
        self.events = events or EventChannel()
        self.log_writer = log_writer or IterationLogWriter(session_store.state_dir)
        self.prompt_builder = prompt_builder
        self.session: Session | None = None

        self._cond = threading.Condition()
        self._state = EngineState.IDLE
        self._interrupt_requested = False
        self._resume_requested = False
        self._skip_next_delay = False
        self._cancellation: CancellationToken | None = None
        self._pending_block: PendingBlock | None = None
        self._block_decision: tuple[BlockDecision, str | None] | None = None
        self._retry_task_id: str | None = None
        self._open_record: IterationRecord | None = None
        self._iterations_run = 0
        self._tasks_completed = 0
        self._tasks_skipped = 0
        self._outcomes: dict[str, int] = {}

    @property
    def state(self) -> EngineState:
        with self._cond:
            return self._state

    @property
    def pending_block(self) -> PendingBlock | None:
        with self._cond:
            return self._pending_block

    def estimate_remaining_ms(self) -> int | None:
        session = self.session
        if session is None:
            return None
        return estimate_remaining_ms(session.iterations, session.remaining_iterations)

    # Control surface

    def pause(self) -> bool:
        """Request a pause that takes effect after the current iteration."""

        with self._cond:
            if self._state != EngineState.RUNNING:
                return False
            self._state = EngineState.PAUSING
            self._cond.notify_all()
        logger.info("Pause requested")
        return True

    def resume(self) -> bool:
        with self._cond:
            if self._state == EngineState.PAUSING:
                self._state = EngineState.RUNNING
                self._cond.notify_all()
                return True
            if self._state != EngineState.PAUSED:
                return False
            self._resume_requested = True
            self._cond.notify_all()
        logger.info("Resume requested")
        return True

    def interrupt(self) -> bool:
        """Cancel the in-flight agent execution and stop the loop.

        Returns ``False`` when the engine already reached a terminal state or
        an interrupt is already in progress.
        """

        with self._cond:
            if self._state.is_terminal or self._interrupt_requested:
                return False
            self._interrupt_requested = True
            if self._state != EngineState.IDLE:
                self._state = EngineState.INTERRUPTING
            token = self._cancellation
            self._cond.notify_all()
        logger.info("Interrupt requested")
        if token is not None and not token.is_cancelled:
            token.cancel()
            self.agent.interrupt()
        return True

    def resolve_block(self, decision: BlockDecision, instructions: str | None = None) -> None:
        """Answer the pending permission block.

        Raises:
            RuntimeError: no iteration is waiting for a decision.
            ValueError: ``alternative`` without instructions.
        """

        decision = BlockDecision(decision)
        if decision == BlockDecision.ALTERNATIVE and not (instructions or "").strip():
            raise ValueError("Alternative decision requires non-empty instructions.")
        with self._cond:
            if self._pending_block is None:
                raise RuntimeError("No blocked task is waiting for a decision.")
            self._block_decision = (decision, instructions.strip() if instructions else None)
            self._cond.notify_all()

    # Run loop

    def run(self) -> RunSummary:
        with self._cond:
            if self._state != EngineState.IDLE:
                raise RuntimeError(f"Engine already started (state={self._state.value}).")
        self._check_adapters()

        existing = self.session_store.load()
        session_id = existing.session_id if existing is not None else uuid4().hex
        self.lock.acquire(
            session_id=session_id,
            agent=self.agent.agent_id,
            tracker=self.tracker.tracker_id,
            clear_stale=self.config.clear_stale_lock,
        )
        reason = "finished"
        try:
            self.session = self._open_session(existing, session_id)
            with self._cond:
                if self._interrupt_requested:
                    self._state = EngineState.INTERRUPTING
                else:
                    self._state = EngineState.RUNNING
            self._sync_tracker()
            reason = self._loop()
        except Exception as error:
            logger.exception("Execution engine failed")
            self._abort_open_iteration()
            self._emit(
                ErrorEvent(
                    message=str(error),
                    recoverable=False,
                    details={"error_type": type(error).__name__},
                ),
            )
            self._set_state(EngineState.FAILED)
            reason = f"error: {error}"
        finally:
            self._finish()
        return self._summary(reason)

    def _check_adapters(self) -> None:
        if not self.agent.detect():
            raise AdapterUnavailableError("agent", self.agent.agent_id)
        if not self.tracker.detect():
            raise AdapterUnavailableError("tracker", self.tracker.tracker_id)

    def _open_session(self, existing: Session | None, session_id: str) -> Session:
        if existing is None:
            return self.session_store.create(
                max_iterations=self.config.max_iterations,
                agent=self.agent.agent_id,
                tracker=self.tracker.tracker_id,
                session_id=session_id,
            )
        existing.max_iterations = max(self.config.max_iterations, existing.current_iteration)
        existing.pause_state = PauseState.RUNNING
        self.session_store.save(existing)
        logger.info(
            "Resuming session %s at iteration %d/%d",
            existing.session_id,
            existing.current_iteration,
            existing.max_iterations,
        )
        return existing

    def _sync_tracker(self) -> None:
        while True:
            try:
                self.tracker.sync()
            except TrackerError as error:
                if not error.recoverable:
                    raise
                if not self._pause_for_tracker_error(error):
                    return
                continue
            self._emit(TrackerSyncedEvent(tracker=self.tracker.tracker_id))
            return

    def _loop(self) -> str:
        session = self._require_session()
        while True:
            if self._interrupted():
                self._set_state(EngineState.INTERRUPTED)
                return "interrupted"
            if self.state == EngineState.PAUSING:
                self._enter_paused(_PAUSE_REASON_REQUESTED)
                continue

            try:
                if self.tracker.is_complete():
                    self._set_state(EngineState.COMPLETED)
                    return "all tasks complete"
                if session.current_iteration >= session.max_iterations:
                    self._set_state(EngineState.FAILED)
                    return "max iterations reached"
                task = self._select_task()
                if task is None:
                    self._set_state(EngineState.COMPLETED)
                    return "no tasks available"
                detail = self.tracker.get_task_detail(task.id)
            except TrackerError as error:
                if not error.recoverable:
                    raise
                self._pause_for_tracker_error(error)
                continue

            self._run_iteration(detail)

            if self._interrupted():
                continue
            if self.state == EngineState.PAUSING:
                self._enter_paused(_PAUSE_REASON_REQUESTED)
            self._delay_between_iterations()

    def _select_task(self) -> Task | None:
        session = self._require_session()
        if self._retry_task_id is not None:
            task_id = self._retry_task_id
            self._retry_task_id = None
            return self.tracker.get_task_detail(task_id).task

        task = self.tracker.get_next_task()
        if task is None or task.id not in session.skipped_task_ids:
            return task
        skipped = set(session.skipped_task_ids)
        for candidate in self.tracker.get_tasks():
            if candidate.id in skipped:
                continue
            if candidate.status in (TaskStatus.PENDING, TaskStatus.ACTIVE):
                return candidate
        logger.info("Only skipped tasks remain: %s", ", ".join(session.skipped_task_ids))
        return None

    def _run_iteration(self, detail: TaskDetail) -> None:
        session = self._require_session()
        task = detail.task
        index = session.current_iteration + 1
        record = IterationRecord(
            index=index,
            max_iterations=session.max_iterations,
            task=task,
            started_at=utc_now(),
        )
        self._open_record = record
        self._iterations_run += 1
        self._emit(
            IterationStartEvent(index=index, max_iterations=session.max_iterations, task=task),
        )
        reasoning = self._task_reasoning(task)
        if reasoning:
            self._emit(TaskReasoningEvent(task=task, reasoning=reasoning))
        self._emit(TaskStartEvent(task=task, iteration=index))
        logger.info("Iteration %d/%d: task %s", index, session.max_iterations, task.id)

        output = self._execute_agent(detail)
        outcome, block = self._classify(output)

        completion_error: TrackerError | None = None
        if outcome == IterationOutcome.SUCCESS:
            try:
                self._complete_task(task, _COMPLETION_REASON)
            except TrackerError as error:
                completion_error = error

        log_path = self.log_writer.path_for(index, task.id)
        finalized = record.finalize(
            ended_at=utc_now(),
            outcome=outcome,
            log_file=str(log_path),
            exit_code=output.exit_code,
            permission_block=block if block.is_blocked else None,
        )
        self.log_writer.write(finalized, output)
        session.iterations.append(finalized)
        session.current_iteration = index
        self.session_store.save(session)
        self._open_record = None
        self._outcomes[outcome.value] = self._outcomes.get(outcome.value, 0) + 1
        self._emit(
            IterationEndEvent(record=finalized, estimated_remaining_ms=self.estimate_remaining_ms()),
        )
        logger.info(
            "Iteration %d finished: outcome=%s exit_code=%d duration_ms=%s",
            index,
            outcome.value,
            output.exit_code,
            finalized.duration_ms,
        )

        if completion_error is not None:
            if not completion_error.recoverable:
                raise completion_error
            self._pause_for_tracker_error(completion_error)
        elif outcome == IterationOutcome.BLOCKED:
            self._handle_block(task, finalized, block)

    def _execute_agent(self, detail: TaskDetail) -> AgentOutput:
        session = self._require_session()
        prompt = self.prompt_builder(detail)
        prompt = append_alternatives(prompt, session.pending_alternatives.get(detail.id, []))
        token = CancellationToken()
        with self._cond:
            if self._interrupt_requested:
                token.cancel()
            self._cancellation = token
        context = AgentExecuteContext(
            prompt=prompt,
            timeout_seconds=self.config.agent_timeout_seconds,
            cancellation=token,
            files=list(self.config.files),
            model=self.config.model,
            cwd=self.config.cwd,
            on_output=self._on_agent_output,
        )
        started = utc_now()
        try:
            return self.agent.execute(context)
        except OSError as error:
            logger.warning("Agent %s failed to run: %s", self.agent.agent_id, error)
            elapsed = int((utc_now() - started).total_seconds() * 1000)
            return AgentOutput(
                stdout="",
                stderr=f"Agent execution error: {error}",
                exit_code=EXIT_CODE_SPAWN_FAILED,
                duration_ms=elapsed,
            )
        finally:
            with self._cond:
                self._cancellation = None

    def _classify(self, output: AgentOutput) -> tuple[IterationOutcome, PermissionBlockResult]:
        if output.interrupted or self._interrupted():
            return IterationOutcome.INTERRUPTED, PermissionBlockResult(is_blocked=False)
        block = classify_agent_output(output, self.agent.agent_id)
        if block.is_blocked:
            return IterationOutcome.BLOCKED, block
        if output.exit_code != 0 or output.timed_out:
            return IterationOutcome.FAILURE, block
        if self.config.require_completion_signal and not has_completion_signal(output.stdout):
            return IterationOutcome.FAILURE, block
        return IterationOutcome.SUCCESS, block

    def _handle_block(
        self,
        task: Task,
        record: IterationRecord,
        block: PermissionBlockResult,
    ) -> None:
        logger.warning(
            "Task %s blocked on %s: %s",
            task.id,
            block.operation,
            block.blocked_command or block.message,
        )
        with self._cond:
            self._pending_block = PendingBlock(task=task, record=record, classification=block)
            self._block_decision = None
            while self._block_decision is None and not self._interrupt_requested:
                self._cond.wait()
            resolution = self._block_decision
            self._pending_block = None
            self._block_decision = None
        if resolution is None:
            return

        decision, instructions = resolution
        logger.info("Block on task %s resolved: %s", task.id, decision.value)
        while True:
            try:
                self._apply_block_decision(task, decision, instructions)
            except TrackerError as error:
                if not error.recoverable:
                    raise
                if not self._pause_for_tracker_error(error):
                    return
                continue
            return

    def _apply_block_decision(
        self,
        task: Task,
        decision: BlockDecision,
        instructions: str | None,
    ) -> None:
        session = self._require_session()
        if decision == BlockDecision.DONE:
            self._complete_task(task, _MARKED_DONE_REASON)
        elif decision == BlockDecision.SKIP:
            if isinstance(self.tracker, SkippableTracker):
                self.tracker.skip_task(task.id)
            if task.id not in session.skipped_task_ids:
                session.skipped_task_ids.append(task.id)
            self._tasks_skipped += 1
        else:
            previous = session.pending_alternatives.get(task.id, [])
            if self.config.alternative_policy == AlternativePolicy.RESET:
                previous = []
            session.pending_alternatives[task.id] = [*previous, instructions or ""]
            self._retry_task_id = task.id
        self.session_store.save(session)

    def _complete_task(self, task: Task, reason: str) -> None:
        self.tracker.complete_task(task.id, reason)
        session = self._require_session()
        session.pending_alternatives.pop(task.id, None)
        self._tasks_completed += 1
        self._emit(TaskCompleteEvent(task=task, reason=reason))

    def _task_reasoning(self, task: Task) -> str | None:
        if not isinstance(self.tracker, DependencyAwareTracker):
            return None
        try:
            return self.tracker.get_task_reasoning(task.id)
        except TrackerError as error:
            logger.warning("Cannot get selection reasoning for %s: %s", task.id, error)
            return None

    def _pause_for_tracker_error(self, error: TrackerError) -> bool:
        """Report a recoverable tracker error and wait; ``False`` means interrupted."""

        logger.warning("Recoverable tracker error, pausing: %s", error)
        self._emit(
            ErrorEvent(
                message=str(error),
                recoverable=True,
                details={"tracker": self.tracker.tracker_id},
            ),
        )
        with self._cond:
            if self._interrupt_requested:
                return False
            self._state = EngineState.PAUSING
        return self._enter_paused(_PAUSE_REASON_TRACKER_ERROR)

    def _enter_paused(self, reason: str) -> bool:
        session = self._require_session()
        with self._cond:
            if self._interrupt_requested:
                return False
            self._state = EngineState.PAUSED
            self._resume_requested = False
        self.session_store.set_pause_state(session, PauseState.PAUSED)
        self._emit(PausedEvent(current_iteration=session.current_iteration, reason=reason))
        logger.info("Paused at iteration %d (%s)", session.current_iteration, reason)

        with self._cond:
            while not self._resume_requested and not self._interrupt_requested:
                self._cond.wait()
            if self._interrupt_requested:
                return False
            self._resume_requested = False
            self._state = EngineState.RUNNING
            self._skip_next_delay = True
        self.session_store.set_pause_state(session, PauseState.RUNNING)
        self._emit(ResumedEvent(current_iteration=session.current_iteration))
        logger.info("Resumed at iteration %d", session.current_iteration)
        return True

    def _delay_between_iterations(self) -> None:
        with self._cond:
            if self._skip_next_delay:
                self._skip_next_delay = False
                return
        delay = self.config.iteration_delay_seconds
        if delay <= 0:
            return
        with self._cond:
            self._cond.wait_for(
                lambda: self._interrupt_requested or self._state == EngineState.PAUSING,
                timeout=delay,
            )

    def _abort_open_iteration(self) -> None:
        record = self._open_record
        session = self.session
        self._open_record = None
        if record is None or session is None:
            return
        finalized = record.finalize(
            ended_at=utc_now(),
            outcome=IterationOutcome.FAILURE,
            log_file=None,
        )
        session.iterations.append(finalized)
        session.current_iteration = finalized.index

    def _finish(self) -> None:
        session = self.session
        try:
            if session is not None:
                if self.state == EngineState.COMPLETED:
                    self.session_store.delete()
                else:
                    self.session_store.save(session)
        finally:
            self.lock.release()
        logger.info("Execution engine stopped: state=%s", self.state.value)

    def _summary(self, reason: str) -> RunSummary:
        session = self.session
        return RunSummary(
            state=self.state,
            reason=reason,
            session_id=session.session_id if session is not None else None,
            iterations_run=self._iterations_run,
            current_iteration=session.current_iteration if session is not None else 0,
            max_iterations=(
                session.max_iterations if session is not None else self.config.max_iterations
            ),
            tasks_completed=self._tasks_completed,
            tasks_skipped=self._tasks_skipped,
            outcomes=dict(self._outcomes),
        )

    # Helpers

    def _on_agent_output(self, stream: str, chunk: str) -> None:
        self._emit(AgentOutputEvent(stream=stream, chunk=chunk))

    def _emit(self, event: EngineEvent) -> None:
        self.events.publish(event)

    def _interrupted(self) -> bool:
        with self._cond:
            return self._interrupt_requested

    def _set_state(self, state: EngineState) -> None:
        with self._cond:
            self._state = state
            self._cond.notify_all()

    def _require_session(self) -> Session:
        if self.session is None:
            raise RuntimeError("Engine session is not open.")
        return self.session
