"""Move songs waiting in ``retry_pending`` back into the pipeline."""

from __future__ import annotations

from songworker.logging import get_logger
from songworker.orchestrator.events import emit_stage_event
from songworker.orchestrator.status import SessionStatus
from songworker.orchestrator.work_queue import WorkQueueSnapshot
from songworker.store.base import SessionRecord, StateStore

logger = get_logger(__name__)

STAGE = "retry"
CLOSING_RETRY_MESSAGE = "Session closed before the retry ran"


async def process_retries(
    session: SessionRecord,
    snapshot: WorkQueueSnapshot,
    *,
    store: StateStore,
) -> int:
    """Requeue retry-pending songs of an active session.

    A closing session does not retry; its waiting songs are failed so the
    session can finish closing.
    """

    if session.status is SessionStatus.CLOSING:
        for song in snapshot.retry_pending:
            if await store.abandon_retry(song.id, CLOSING_RETRY_MESSAGE):
                emit_stage_event(
                    logger,
                    stage=STAGE,
                    session_id=session.id,
                    song_id=song.id,
                    status="abandoned",
                )
        return 0
    if session.status is not SessionStatus.ACTIVE:
        return 0

    retried = 0
    for song in snapshot.retry_pending:
        if not await store.retry_errored_song(song.id):
            continue
        retried += 1
        emit_stage_event(
            logger,
            stage=STAGE,
            session_id=session.id,
            song_id=song.id,
            status="requeued",
            errored_at_status=song.errored_at_status,
            retry_count=song.retry_count + 1,
        )
    return retried


__all__ = ["process_retries"]
