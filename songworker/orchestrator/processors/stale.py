"""Delete songs stuck in an in-progress status for too long."""

from __future__ import annotations

from songworker.logging import get_logger
from songworker.orchestrator.events import emit_stale_event
from songworker.orchestrator.work_queue import WorkQueueSnapshot, stale_reference
from songworker.store.base import SessionRecord, StateStore

logger = get_logger(__name__)


async def process_stale(
    session: SessionRecord,
    snapshot: WorkQueueSnapshot,
    *,
    store: StateStore,
) -> int:
    deleted = 0
    for song in snapshot.stale:
        removed = await store.delete_work_item(song.id)
        if removed:
            deleted += 1
        emit_stale_event(
            logger,
            session_id=session.id,
            song_id=song.id,
            song_status=song.status.value,
            stale_since=stale_reference(song),
            deleted=removed,
        )
    return deleted


__all__ = ["process_stale"]
