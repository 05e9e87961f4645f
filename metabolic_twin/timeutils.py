"""Time helpers shared by the curve models."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterator


def minutes_between(earlier: datetime, later: datetime) -> float:
    """Signed minutes from ``earlier`` to ``later``."""
    return (later - earlier).total_seconds() / 60.0


def iter_time_steps(
    start_time: datetime,
    end_time: datetime,
    resolution_minutes: float,
) -> Iterator[datetime]:
    """Yield timestamps from start to end inclusive at a fixed resolution."""
    if resolution_minutes <= 0:
        raise ValueError(f"resolution_minutes must be positive, got {resolution_minutes}")
    step = timedelta(minutes=resolution_minutes)
    at_time = start_time
    while at_time <= end_time:
        yield at_time
        at_time += step
