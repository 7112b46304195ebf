"""Advisory workspace lock preventing two concurrent loop instances."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from uuid import uuid4

from agent_loop.engine.common import dump_json, load_json, utc_now
from agent_loop.engine.errors import LockConflictError, StaleLockError
from agent_loop.engine.models import LockRecord

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "agent-loop.lock"
_ACQUIRE_ATTEMPTS = 2


class LockState(str, Enum):
    FREE = "free"
    HELD = "held"
    STALE = "stale"


@dataclass(slots=True)
class LockStatus:
    """Result of reading the lock file."""

    state: LockState
    record: LockRecord | None = None


def pid_is_alive(pid: int) -> bool:
    """Check whether a process id belongs to a running process."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class InstanceLock:
    """Explicit lock resource acquired at startup and released on every exit path."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.path = state_dir / LOCK_FILE_NAME
        self._owned: LockRecord | None = None

    @property
    def is_owned(self) -> bool:
        return self._owned is not None

    def check(self) -> LockStatus:
        try:
            record = self._read_record()
        except FileNotFoundError:
            return LockStatus(state=LockState.FREE)
        except (OSError, json.JSONDecodeError, TypeError, KeyError, ValueError):
            logger.warning("Unreadable lock file %s treated as stale", self.path)
            return LockStatus(state=LockState.STALE)
        if pid_is_alive(record.pid):
            return LockStatus(state=LockState.HELD, record=record)
        return LockStatus(state=LockState.STALE, record=record)

    def acquire(
        self,
        *,
        session_id: str,
        agent: str,
        tracker: str,
        clear_stale: bool = False,
    ) -> LockRecord:
        """Write the lock record for this process.

        Raises:
            LockConflictError: a live process holds the lock.
            StaleLockError: a dead process left a lock and ``clear_stale`` is false.
        """

        record = LockRecord(
            pid=os.getpid(),
            start_time=utc_now(),
            session_id=session_id,
            agent=agent,
            tracker=tracker,
        )
        status = LockStatus(state=LockState.FREE)
        for _ in range(_ACQUIRE_ATTEMPTS):
            if self._create_exclusive(record):
                self._owned = record
                logger.info("Acquired workspace lock %s (pid=%d)", self.path, record.pid)
                return record
            status = self.check()
            if status.state == LockState.HELD and status.record is not None:
                raise LockConflictError(status.record.pid, str(self.path))
            if status.state == LockState.STALE:
                stale_pid = status.record.pid if status.record is not None else -1
                if not clear_stale:
                    raise StaleLockError(stale_pid, str(self.path))
                logger.warning("Clearing stale lock left by pid=%d", stale_pid)
                self.clear_stale()
        holder = status.record.pid if status.record is not None else -1
        raise LockConflictError(holder, str(self.path))

    def release(self) -> None:
        """Remove the lock if this instance still owns the file on disk.

        Safe to call repeatedly. A lock file rewritten by another process
        (after ``force_clear``) is left in place.
        """

        owned = self._owned
        if owned is None:
            return
        self._owned = None
        try:
            current = self._read_record()
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError, TypeError, KeyError, ValueError):
            logger.warning("Unreadable lock file %s left in place on release", self.path)
            return
        if current.pid != owned.pid or current.session_id != owned.session_id:
            logger.warning(
                "Lock %s now belongs to pid=%d session=%s; not removing it",
                self.path,
                current.pid,
                current.session_id,
            )
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        logger.info("Released workspace lock %s", self.path)

    def _read_record(self) -> LockRecord:
        return LockRecord.from_dict(load_json(self.path))

    def _create_exclusive(self, record: LockRecord) -> bool:
        """Publish a complete lock file only if none exists; ``False`` on conflict."""

        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{record.pid}.{uuid4().hex}.tmp")
        tmp_path.write_text(dump_json(record.to_dict()), "utf-8")
        try:
            os.link(tmp_path, self.path)
        except FileExistsError:
            return False
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def clear_stale(self) -> bool:
        """Remove a lock whose owner is gone; live locks are left untouched."""

        status = self.check()
        if status.state != LockState.STALE:
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True

    def force_clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return

    @contextmanager
    def held(
        self,
        *,
        session_id: str,
        agent: str,
        tracker: str,
        clear_stale: bool = False,
    ) -> Iterator[LockRecord]:
        record = self.acquire(
            session_id=session_id,
            agent=agent,
            tracker=tracker,
            clear_stale=clear_stale,
        )
        try:
            yield record
        finally:
            self.release()
