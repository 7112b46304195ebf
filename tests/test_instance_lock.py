from __future__ import annotations

import json
import os
import subprocess
import sys
import threading
from pathlib import Path

import allure
import pytest

from agent_loop.engine.errors import LockConflictError, StaleLockError
from agent_loop.engine.lock import InstanceLock, LockState, LockStatus, pid_is_alive

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Instance Lock"),
]


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait()
    return process.pid


def _write_lock(path: Path, pid: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            {
                "pid": pid,
                "start_time": "2026-01-01T00:00:00+00:00",
                "session_id": "s-1",
                "agent": "claude",
                "tracker": "json",
            },
        ),
        "utf-8",
    )


def test_acquire_writes_record_and_release_removes_it(tmp_path: Path) -> None:
    lock = InstanceLock(tmp_path)

    record = lock.acquire(session_id="s-1", agent="claude", tracker="json")

    assert record.pid == os.getpid()
    assert lock.is_owned
    payload = json.loads(lock.path.read_text("utf-8"))
    assert payload["session_id"] == "s-1"
    assert lock.check().state == LockState.HELD

    lock.release()
    lock.release()

    assert not lock.path.exists()
    assert lock.check().state == LockState.FREE


def test_second_instance_conflicts_with_live_owner(tmp_path: Path) -> None:
    first = InstanceLock(tmp_path)
    first.acquire(session_id="s-1", agent="claude", tracker="json")

    with pytest.raises(LockConflictError) as error:
        InstanceLock(tmp_path).acquire(session_id="s-2", agent="claude", tracker="json")

    assert error.value.pid == os.getpid()
    first.release()


def test_release_without_ownership_keeps_foreign_lock(tmp_path: Path) -> None:
    _write_lock(tmp_path / "agent-loop.lock", os.getpid())

    InstanceLock(tmp_path).release()

    assert (tmp_path / "agent-loop.lock").exists()


def test_dead_owner_is_stale(tmp_path: Path) -> None:
    dead_pid = _dead_pid()
    _write_lock(tmp_path / "agent-loop.lock", dead_pid)
    lock = InstanceLock(tmp_path)

    status = lock.check()
    assert status.state == LockState.STALE
    assert status.record is not None
    assert status.record.pid == dead_pid

    with pytest.raises(StaleLockError):
        lock.acquire(session_id="s-2", agent="claude", tracker="json")

    record = lock.acquire(session_id="s-2", agent="claude", tracker="json", clear_stale=True)
    assert record.pid == os.getpid()
    lock.release()


def test_unreadable_lock_file_is_stale(tmp_path: Path) -> None:
    (tmp_path / "agent-loop.lock").write_text("garbage", "utf-8")
    lock = InstanceLock(tmp_path)

    assert lock.check().state == LockState.STALE
    assert lock.clear_stale() is True
    assert lock.check().state == LockState.FREE


def test_clear_stale_refuses_live_lock(tmp_path: Path) -> None:
    _write_lock(tmp_path / "agent-loop.lock", os.getpid())
    lock = InstanceLock(tmp_path)

    assert lock.clear_stale() is False
    assert lock.path.exists()

    lock.force_clear()
    assert not lock.path.exists()


def test_held_context_releases_on_error(tmp_path: Path) -> None:
    lock = InstanceLock(tmp_path)

    with pytest.raises(RuntimeError, match="boom"):
        with lock.held(session_id="s-1", agent="claude", tracker="json"):
            assert lock.path.exists()
            raise RuntimeError("boom")

    assert not lock.path.exists()


def test_pid_liveness() -> None:
    assert pid_is_alive(os.getpid()) is True
    assert pid_is_alive(_dead_pid()) is False
    assert pid_is_alive(0) is False


def test_concurrent_acquire_admits_exactly_one_owner(tmp_path: Path) -> None:
    locks = [InstanceLock(tmp_path) for _ in range(8)]
    barrier = threading.Barrier(len(locks))
    winners: list[InstanceLock] = []
    conflicts: list[LockConflictError] = []
    guard = threading.Lock()

    def _contend(lock: InstanceLock, index: int) -> None:
        barrier.wait()
        try:
            lock.acquire(session_id=f"s-{index}", agent="claude", tracker="json")
        except LockConflictError as error:
            with guard:
                conflicts.append(error)
            return
        with guard:
            winners.append(lock)

    threads = [
        threading.Thread(target=_contend, args=(lock, index)) for index, lock in enumerate(locks)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert len(winners) == 1
    assert len(conflicts) == len(locks) - 1
    assert list(tmp_path.glob("*.tmp")) == []
    winners[0].release()
    assert not (tmp_path / "agent-loop.lock").exists()


def test_outdated_free_status_cannot_overwrite_existing_lock(tmp_path: Path, monkeypatch) -> None:
    first = InstanceLock(tmp_path)
    first.acquire(session_id="s-1", agent="claude", tracker="json")
    second = InstanceLock(tmp_path)
    monkeypatch.setattr(second, "check", lambda: LockStatus(state=LockState.FREE))

    with pytest.raises(LockConflictError):
        second.acquire(session_id="s-2", agent="claude", tracker="json")

    assert json.loads(first.path.read_text("utf-8"))["session_id"] == "s-1"
    assert second.is_owned is False
    first.release()


def test_release_keeps_lock_rewritten_by_another_process(tmp_path: Path) -> None:
    lock = InstanceLock(tmp_path)
    lock.acquire(session_id="s-1", agent="claude", tracker="json")
    lock.force_clear()
    _write_lock(lock.path, os.getpid())
    payload = json.loads(lock.path.read_text("utf-8"))
    payload["session_id"] = "s-other"
    lock.path.write_text(json.dumps(payload), "utf-8")

    lock.release()

    assert lock.path.exists()
    assert lock.is_owned is False
