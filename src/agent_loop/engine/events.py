"""Typed engine events and the bounded channel the engine publishes them to."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_loop.engine.common import utc_now
from agent_loop.engine.models import (
    IterationOutcome,
    IterationRecord,
    PermissionBlockResult,
    Task,
)

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Closed set of event tags. Consumers ignore tags they do not know."""

    ITERATION_START = "iteration:start"
    ITERATION_END = "iteration:end"
    TASK_START = "task:start"
    TASK_COMPLETE = "task:complete"
    TASK_REASONING = "task:reasoning"
    AGENT_OUTPUT = "agent:output"
    ERROR = "error"
    PAUSED = "paused"
    RESUMED = "resumed"
    TRACKER_SYNCED = "tracker:synced"


@dataclass(slots=True, kw_only=True)
class EngineEvent:
    """Base record for every event on the channel."""

    kind: EventKind
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(slots=True, kw_only=True)
class IterationStartEvent(EngineEvent):
    kind: EventKind = EventKind.ITERATION_START
    index: int
    max_iterations: int
    task: Task


@dataclass(slots=True, kw_only=True)
class IterationEndEvent(EngineEvent):
    """Emitted after the iteration record and session are persisted.

    ``permission_block`` is set when the outcome is ``blocked``; the engine
    then waits for :meth:`ExecutionEngine.resolve_block` before moving on.
    """

    kind: EventKind = EventKind.ITERATION_END
    record: IterationRecord
    estimated_remaining_ms: int | None = None

    @property
    def outcome(self) -> IterationOutcome | None:
        return self.record.outcome

    @property
    def permission_block(self) -> PermissionBlockResult | None:
        return self.record.permission_block


@dataclass(slots=True, kw_only=True)
class TaskStartEvent(EngineEvent):
    kind: EventKind = EventKind.TASK_START
    task: Task
    iteration: int


@dataclass(slots=True, kw_only=True)
class TaskCompleteEvent(EngineEvent):
    kind: EventKind = EventKind.TASK_COMPLETE
    task: Task
    reason: str | None = None


@dataclass(slots=True, kw_only=True)
class TaskReasoningEvent(EngineEvent):
    kind: EventKind = EventKind.TASK_REASONING
    task: Task
    reasoning: str


@dataclass(slots=True, kw_only=True)
class AgentOutputEvent(EngineEvent):
    kind: EventKind = EventKind.AGENT_OUTPUT
    stream: str
    chunk: str


@dataclass(slots=True, kw_only=True)
class ErrorEvent(EngineEvent):
    kind: EventKind = EventKind.ERROR
    message: str
    recoverable: bool
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, kw_only=True)
class PausedEvent(EngineEvent):
    kind: EventKind = EventKind.PAUSED
    current_iteration: int
    reason: str = "requested"


@dataclass(slots=True, kw_only=True)
class ResumedEvent(EngineEvent):
    kind: EventKind = EventKind.RESUMED
    current_iteration: int


@dataclass(slots=True, kw_only=True)
class TrackerSyncedEvent(EngineEvent):
    kind: EventKind = EventKind.TRACKER_SYNCED
    tracker: str
    task_count: int | None = None


class EventChannel:
    """Bounded queue the engine writes to and a renderer drains.

    Publishing never blocks: when the queue is full the oldest event is
    discarded so a slow or absent consumer cannot stall the loop.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        if maxsize <= 0:
            raise ValueError("Event channel size must be > 0.")
        self._queue: queue.Queue[EngineEvent] = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self.dropped = 0

    def publish(self, event: EngineEvent) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        continue
                    self.dropped += 1
                    if self.dropped == 1 or self.dropped % 100 == 0:
                        logger.warning("Event channel full, dropped=%d", self.dropped)

    def get(self, timeout: float | None = None) -> EngineEvent | None:
        """Return the next event, or ``None`` when nothing arrives in time."""

        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> Iterator[EngineEvent]:
        """Yield every event currently queued without waiting."""

        while True:
            try:
                yield self._queue.get_nowait()
            except queue.Empty:
                return

    def __len__(self) -> int:
        return self._queue.qsize()
