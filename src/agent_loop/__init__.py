"""Autonomous agent work loop: drive a coding agent through tracker tasks."""

__version__ = "0.1.0"
