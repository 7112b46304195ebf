"""Tracker adapter implementations."""

from agent_loop.trackers.base import DependencyAwareTracker, SkippableTracker, TrackerAdapter
from agent_loop.trackers.beads_tracker import BeadsTracker
from agent_loop.trackers.json_tracker import JsonPrdTracker
from agent_loop.trackers.registry import create_tracker, register_tracker, supported_trackers

__all__ = [
    "BeadsTracker",
    "DependencyAwareTracker",
    "JsonPrdTracker",
    "SkippableTracker",
    "TrackerAdapter",
    "create_tracker",
    "register_tracker",
    "supported_trackers",
]
