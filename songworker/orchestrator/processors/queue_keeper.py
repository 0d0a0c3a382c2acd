"""Keep a small buffer of songs queued ahead of playback."""

from __future__ import annotations

from songworker.logging import get_logger
from songworker.orchestrator.events import emit_stage_event
from songworker.orchestrator.status import SessionStatus
from songworker.orchestrator.work_queue import WorkQueueSnapshot
from songworker.store.base import SessionRecord, StateStore

logger = get_logger(__name__)

STAGE = "queue"


def planned_order_index(
    session: SessionRecord, snapshot: WorkQueueSnapshot, *, buffer_target: int
) -> float | None:
    """Return the order index of the song to create this tick, if any.

    Oneshot sessions get exactly one song. Endless sessions get at most one
    new song per tick while the buffer is short.
    """

    if session.status is not SessionStatus.ACTIVE:
        return None
    if session.is_oneshot:
        return 1.0 if snapshot.total_songs == 0 else None
    if snapshot.buffer_deficit(buffer_target) <= 0:
        return None
    return snapshot.next_order_index


async def process_queue(
    session: SessionRecord,
    snapshot: WorkQueueSnapshot,
    *,
    store: StateStore,
    buffer_target: int,
) -> bool:
    order_index = planned_order_index(session, snapshot, buffer_target=buffer_target)
    if order_index is None:
        return False
    song = await store.insert_pending_work_item(session.id, order_index)
    emit_stage_event(
        logger,
        stage=STAGE,
        session_id=session.id,
        song_id=song.id,
        status="created",
        order_index=order_index,
        buffer_count=snapshot.buffer_count,
    )
    return True


__all__ = ["planned_order_index", "process_queue"]
