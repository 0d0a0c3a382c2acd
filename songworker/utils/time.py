"""Time helpers with timezone-aware and monotonic clocks."""

from __future__ import annotations

from datetime import UTC, datetime
import time as _time

__all__ = ["as_utc", "monotonic_ms", "now_utc", "seconds_since"]


def now_utc() -> datetime:
    """Return the current UTC time with timezone information."""

    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def seconds_since(value: datetime | None, *, now: datetime | None = None) -> float | None:
    moment = as_utc(value)
    if moment is None:
        return None
    reference = now if now is not None else now_utc()
    return (reference - moment).total_seconds()


def monotonic_ms() -> int:
    """Return a monotonic timestamp in milliseconds."""

    return _time.monotonic_ns() // 1_000_000
