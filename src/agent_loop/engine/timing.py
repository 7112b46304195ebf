"""Remaining-time projection from recent iteration durations."""

from __future__ import annotations

from collections.abc import Sequence

from agent_loop.engine.models import IterationRecord

ROLLING_WINDOW = 5


def rolling_average_ms(records: Sequence[IterationRecord], window: int = ROLLING_WINDOW) -> float | None:
    """Average duration of the last ``window`` finalized iterations, or ``None``."""

    durations = [record.duration_ms for record in records if record.duration_ms is not None]
    if not durations:
        return None
    recent = durations[-window:]
    return sum(recent) / len(recent)


def estimate_remaining_ms(
    records: Sequence[IterationRecord],
    remaining_iterations: int,
    window: int = ROLLING_WINDOW,
) -> int | None:
    """Project remaining run time; ``None`` means unknown."""

    average = rolling_average_ms(records, window)
    if average is None:
        return None
    return int(average * max(0, remaining_iterations))


def format_duration_ms(value: int | None) -> str:
    if value is None:
        return "unknown"
    seconds = value // 1000
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{seconds:02d}s"
    return f"{seconds}s"
