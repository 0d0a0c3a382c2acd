"""Startup recovery for songs left in flight by a previous worker process."""

from __future__ import annotations

from dataclasses import dataclass, field

from songworker.errors import StateStoreUnavailableError
from songworker.logging import get_logger
from songworker.orchestrator.events import emit_recovery_event
from songworker.store.base import StateStore

logger = get_logger(__name__)


@dataclass(slots=True)
class RecoveryReport:
    sessions: int = 0
    recovered: int = 0
    failed_sessions: list[str] = field(default_factory=list)


async def run_startup_recovery(store: StateStore) -> RecoveryReport:
    """Recover every serviced session before the tick loop starts.

    Listing sessions must succeed: the failure is re-raised as
    :class:`StateStoreUnavailableError` so the caller can exit. Failures for
    individual sessions are logged and skipped.
    """

    try:
        sessions = await store.list_serviced_sessions()
    except Exception as exc:
        emit_recovery_event(logger, session_id=None, status="failed", error=str(exc))
        if isinstance(exc, StateStoreUnavailableError):
            raise
        raise StateStoreUnavailableError(f"Unable to list sessions for recovery: {exc}") from exc

    report = RecoveryReport(sessions=len(sessions))
    for session in sessions:
        try:
            count = await store.recover_from_restart(session.id)
        except Exception as exc:
            report.failed_sessions.append(session.id)
            emit_recovery_event(
                logger, session_id=session.id, status="failed", error=str(exc)
            )
            continue
        report.recovered += count
        if count:
            emit_recovery_event(
                logger, session_id=session.id, status="recovered", recovered=count
            )

    emit_recovery_event(
        logger, session_id=None, status="completed", recovered=report.recovered
    )
    return report


__all__ = ["RecoveryReport", "run_startup_recovery"]
