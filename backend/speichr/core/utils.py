"""
Speichr - Small Shared Helpers
==============================

Clamping, percentiles and time helpers used across the orchestration core.
"""

import math
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def clamp_int(value: Any, minimum: int, maximum: int, fallback: int) -> int:
    """Truncate and clamp a number, or return the fallback for anything else."""
    if not _is_number(value):
        return fallback
    return min(maximum, max(minimum, int(value)))


def clamp_float(value: Any, minimum: float, maximum: float, fallback: float) -> float:
    if not _is_number(value):
        return fallback
    return float(min(maximum, max(minimum, value)))


def percentile(sorted_samples: list[float], point: float) -> float:
    """Lower nearest-rank percentile over already sorted samples."""
    if not sorted_samples:
        return 0
    index = min(
        len(sorted_samples) - 1,
        max(0, math.floor(point * (len(sorted_samples) - 1))),
    )
    return sorted_samples[index]


def time_bucket(timestamp: datetime, interval_minutes: int) -> datetime:
    """Floor a timestamp to the start of its interval."""
    interval_seconds = max(1, interval_minutes) * 60
    epoch = int(ensure_utc(timestamp).timestamp())
    return datetime.fromtimestamp(epoch - epoch % interval_seconds, tz=timezone.utc)
