"""Durable session record enabling resume after restarts."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from uuid import uuid4

from agent_loop.engine.common import load_json, utc_now, write_json_atomic
from agent_loop.engine.errors import SessionStoreError
from agent_loop.engine.models import PauseState, Session

logger = logging.getLogger(__name__)

SESSION_FILE_NAME = "session.json"
SESSION_SCHEMA_VERSION = 1


class SessionStore:
    """Reads and writes the single session file of a workspace state dir."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.path = state_dir / SESSION_FILE_NAME

    def exists(self) -> bool:
        return self.path.exists()

    def create(
        self,
        *,
        max_iterations: int,
        agent: str,
        tracker: str,
        session_id: str | None = None,
    ) -> Session:
        """Build a fresh session and persist it immediately."""

        session = Session(
            session_id=session_id or uuid4().hex,
            started_at=utc_now(),
            max_iterations=max_iterations,
            agent=agent,
            tracker=tracker,
        )
        self.save(session)
        logger.info("Created session %s (max_iterations=%d)", session.session_id, max_iterations)
        return session

    def load(self) -> Session | None:
        """Return the persisted session, or ``None`` when there is none."""

        if not self.path.exists():
            return None
        try:
            payload = load_json(self.path)
            return Session.from_dict(payload["session"])
        except (OSError, json.JSONDecodeError, TypeError, KeyError, ValueError) as error:
            raise SessionStoreError(f"Unreadable session file {self.path}: {error}") from error

    def save(self, session: Session) -> None:
        if session.current_iteration > session.max_iterations:
            raise SessionStoreError(
                f"current_iteration={session.current_iteration} exceeds "
                f"max_iterations={session.max_iterations}",
            )
        write_json_atomic(
            self.path,
            {
                "schema_version": SESSION_SCHEMA_VERSION,
                "saved_at": utc_now().isoformat(),
                "session": session.to_dict(),
            },
        )

    def set_pause_state(self, session: Session, pause_state: PauseState) -> None:
        session.pause_state = pause_state
        self.save(session)

    def delete(self) -> None:
        """Remove the session file after a clean completion."""

        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        logger.info("Removed session file %s", self.path)
