"""String-id registry mapping tracker names to adapter constructors."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from agent_loop.engine.errors import UnknownAdapterError
from agent_loop.trackers.base import TrackerAdapter
from agent_loop.trackers.beads_tracker import BeadsTracker
from agent_loop.trackers.json_tracker import JsonPrdTracker

TrackerFactory = Callable[[], TrackerAdapter]

_TRACKER_FACTORIES: dict[str, TrackerFactory] = {
    "json": JsonPrdTracker,
    "beads": BeadsTracker,
}


def register_tracker(tracker_id: str, factory: TrackerFactory) -> None:
    """Register a tracker constructor under a normalized id."""

    normalized = tracker_id.strip().lower()
    if not normalized:
        raise ValueError("Tracker id must be a non-empty string.")
    _TRACKER_FACTORIES[normalized] = factory


def supported_trackers() -> tuple[str, ...]:
    return tuple(sorted(_TRACKER_FACTORIES))


def create_tracker(tracker_id: str, options: dict[str, Any] | None = None) -> TrackerAdapter:
    """Construct and initialize the tracker registered for ``tracker_id``."""

    normalized = tracker_id.strip().lower()
    try:
        factory = _TRACKER_FACTORIES[normalized]
    except KeyError as error:
        raise UnknownAdapterError(
            f"Unsupported tracker {tracker_id!r}. Expected one of: {', '.join(supported_trackers())}",
        ) from error
    tracker = factory()
    tracker.initialize(options or {})
    return tracker
