"""Execution engine: iteration loop, session persistence, lock, events and classifier."""
