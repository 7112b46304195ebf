"""Exception taxonomy for the execution engine and its adapters."""

from __future__ import annotations


class AgentLoopError(RuntimeError):
    """Base class for all agent-loop errors."""


class AdapterUnavailableError(AgentLoopError):
    """Configured agent or tracker backend is not present on this machine."""

    def __init__(self, kind: str, adapter_id: str) -> None:
        super().__init__(f"{kind.capitalize()} {adapter_id!r} is not available.")
        self.kind = kind
        self.adapter_id = adapter_id


class UnknownAdapterError(AgentLoopError):
    """Registry lookup for an adapter id that is not registered."""


class LockConflictError(AgentLoopError):
    """Another live process already holds the workspace lock."""

    def __init__(self, pid: int, lock_path: str) -> None:
        super().__init__(f"Workspace is locked by running process pid={pid} ({lock_path}).")
        self.pid = pid
        self.lock_path = lock_path


class StaleLockError(AgentLoopError):
    """A lock left by a dead process blocks startup and was not cleared."""

    def __init__(self, pid: int, lock_path: str) -> None:
        super().__init__(
            f"Stale lock from dead process pid={pid} at {lock_path}; clear it to continue.",
        )
        self.pid = pid
        self.lock_path = lock_path


class SessionStoreError(AgentLoopError):
    """Session file is unreadable or malformed."""


class TrackerError(AgentLoopError):
    """Tracker backend failure with recoverability hint."""

    def __init__(self, message: str, *, recoverable: bool = True) -> None:
        super().__init__(message)
        self.recoverable = recoverable
