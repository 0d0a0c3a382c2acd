"""Structured logging helpers for orchestrator components."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from songworker.logging_events import log_event
from songworker.utils.metrics import observe_stage_duration, observe_tick, record_stage_outcome


def format_datetime(value: datetime | None) -> str | None:
    """Return an ISO formatted timestamp for ``value`` if present."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat()
    return value.astimezone(timezone.utc).isoformat()


def emit_tick_event(
    logger: Any,
    *,
    status: str,
    duration_ms: int,
    sessions: int,
    dispatched: int = 0,
    failed_sessions: int = 0,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {
        "status": status,
        "duration_ms": duration_ms,
        "sessions": sessions,
        "dispatched": dispatched,
        "failed_sessions": failed_sessions,
    }
    if error:
        payload["error"] = error
    level = logging.WARNING if status == "error" else logging.DEBUG
    _emit_event(logger, "orchestrator.tick", payload, level=level)
    observe_tick(status, duration_ms / 1000.0)


def emit_stage_event(
    logger: Any,
    *,
    stage: str,
    session_id: str,
    song_id: str | None,
    status: str,
    duration_ms: int | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    payload: dict[str, Any] = {
        "stage": stage,
        "session_id": session_id,
        "status": status,
    }
    if song_id is not None:
        payload["entity_id"] = song_id
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    if error:
        payload["error"] = error
    payload.update({key: value for key, value in extra.items() if value is not None})
    level = logging.WARNING if status in {"failed", "error"} else logging.INFO
    _emit_event(logger, "orchestrator.stage", payload, level=level)
    record_stage_outcome(stage, status)
    if duration_ms is not None:
        observe_stage_duration(stage, duration_ms / 1000.0)


def emit_session_event(
    logger: Any,
    *,
    session_id: str,
    status: str,
    previous: str | None = None,
    reason: str | None = None,
) -> None:
    payload: dict[str, Any] = {"session_id": session_id, "status": status}
    if previous:
        payload["previous"] = previous
    if reason:
        payload["reason"] = reason
    _emit_event(logger, "orchestrator.session", payload)


def emit_recovery_event(
    logger: Any,
    *,
    session_id: str | None,
    status: str,
    recovered: int = 0,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {"status": status, "recovered": recovered}
    if session_id is not None:
        payload["session_id"] = session_id
    if error:
        payload["error"] = error
    level = logging.ERROR if status == "failed" else logging.INFO
    _emit_event(logger, "orchestrator.recovery", payload, level=level)


def emit_stale_event(
    logger: Any,
    *,
    session_id: str,
    song_id: str,
    song_status: str,
    stale_since: datetime | None,
    deleted: bool,
) -> None:
    payload: dict[str, Any] = {
        "session_id": session_id,
        "entity_id": song_id,
        "song_status": song_status,
        "status": "deleted" if deleted else "skipped",
    }
    since = format_datetime(stale_since)
    if since is not None:
        payload["stale_since"] = since
    _emit_event(logger, "orchestrator.stale", payload, level=logging.WARNING)
    record_stage_outcome("stale", payload["status"])


def _emit_event(
    logger: Any,
    event: str,
    payload: dict[str, Any],
    *,
    level: int = logging.INFO,
) -> None:
    log_event(logger, event, level=level, **payload)


__all__ = [
    "emit_recovery_event",
    "emit_session_event",
    "emit_stage_event",
    "emit_stale_event",
    "emit_tick_event",
    "format_datetime",
]
