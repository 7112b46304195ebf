from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from agent_loop.engine.common import utc_now
from agent_loop.engine.errors import SessionStoreError
from agent_loop.engine.models import (
    IterationOutcome,
    IterationRecord,
    PauseState,
    PermissionBlockResult,
    Task,
)
from agent_loop.engine.session import SessionStore

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Session Persistence"),
]


def _record(index: int, outcome: IterationOutcome) -> IterationRecord:
    started = utc_now()
    open_record = IterationRecord(
        index=index,
        max_iterations=5,
        task=Task(id=f"US-{index:03d}", title="Story"),
        started_at=started,
    )
    return open_record.finalize(
        ended_at=started + timedelta(milliseconds=1500),
        outcome=outcome,
        log_file=f"/tmp/iteration-{index:03d}.log",
        exit_code=0,
        permission_block=(
            PermissionBlockResult(
                is_blocked=True,
                operation="bash command",
                message="Claude wants to run: ls",
                blocked_command="ls",
                full_blocked_command="ls",
            )
            if outcome == IterationOutcome.BLOCKED
            else None
        ),
    )


def test_create_persists_fresh_session(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / ".agent-loop")

    session = store.create(max_iterations=5, agent="claude", tracker="json")

    assert store.exists()
    payload = json.loads(store.path.read_text("utf-8"))
    assert payload["schema_version"] == 1
    assert payload["session"]["session_id"] == session.session_id
    assert payload["session"]["current_iteration"] == 0
    assert payload["session"]["pause_state"] == "running"


def test_round_trip_keeps_iterations_and_decisions(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    session = store.create(max_iterations=5, agent="claude", tracker="json", session_id="abc")
    session.iterations = [
        _record(1, IterationOutcome.SUCCESS),
        _record(2, IterationOutcome.BLOCKED),
    ]
    session.current_iteration = 2
    session.skipped_task_ids = ["US-002"]
    session.pending_alternatives = {"US-003": ["use a mock", "skip network"]}
    session.tracker_state = {"cursor": 7}
    store.save(session)

    loaded = store.load()

    assert loaded is not None
    assert loaded.session_id == "abc"
    assert loaded.current_iteration == 2
    assert loaded.remaining_iterations == 3
    assert [record.outcome for record in loaded.iterations] == [
        IterationOutcome.SUCCESS,
        IterationOutcome.BLOCKED,
    ]
    assert loaded.iterations[0].duration_ms == 1500
    assert loaded.iterations[1].permission_block is not None
    assert loaded.iterations[1].permission_block.blocked_command == "ls"
    assert loaded.skipped_task_ids == ["US-002"]
    assert loaded.pending_alternatives == {"US-003": ["use a mock", "skip network"]}
    assert loaded.tracker_state == {"cursor": 7}
    assert len(loaded.iterations) == loaded.current_iteration


def test_load_returns_none_without_file(tmp_path: Path) -> None:
    assert SessionStore(tmp_path).load() is None


def test_corrupt_session_file_raises(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.path.write_text("{not json", "utf-8")

    with pytest.raises(SessionStoreError, match="Unreadable session file"):
        store.load()


def test_save_rejects_iteration_beyond_budget(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    session = store.create(max_iterations=2, agent="claude", tracker="json")
    session.current_iteration = 3

    with pytest.raises(SessionStoreError, match="exceeds"):
        store.save(session)


def test_pause_state_is_persisted(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    session = store.create(max_iterations=2, agent="claude", tracker="json")

    store.set_pause_state(session, PauseState.PAUSED)

    loaded = store.load()
    assert loaded is not None
    assert loaded.pause_state == PauseState.PAUSED


def test_delete_is_idempotent(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.create(max_iterations=2, agent="claude", tracker="json")

    store.delete()
    store.delete()

    assert not store.exists()


def test_finalize_twice_is_rejected() -> None:
    record = _record(1, IterationOutcome.FAILURE)

    with pytest.raises(ValueError, match="already finalized"):
        record.finalize(ended_at=utc_now(), outcome=IterationOutcome.SUCCESS, log_file=None)
