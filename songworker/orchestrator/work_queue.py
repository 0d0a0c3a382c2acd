"""Categorise a session's songs into the per-stage work lists."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
import math
from typing import TYPE_CHECKING

from songworker.orchestrator.status import (
    BUFFERED_STATUSES,
    IN_PROGRESS_STATUSES,
    TRANSIENT_STATUSES,
    SongStatus,
)
from songworker.utils.time import now_utc, seconds_since

if TYPE_CHECKING:
    from songworker.store.base import SessionRecord, SongRecord

RECENT_COMPLETED_LIMIT = 5
RECENT_DESCRIPTIONS_LIMIT = 20

_COVER_BLOCKED_STATUSES = frozenset(
    {SongStatus.PENDING, SongStatus.GENERATING_METADATA, SongStatus.ERROR}
)


@dataclass(slots=True)
class WorkQueueSnapshot:
    session_id: str
    pending: list[SongRecord] = field(default_factory=list)
    metadata_ready: list[SongRecord] = field(default_factory=list)
    needs_cover: list[SongRecord] = field(default_factory=list)
    submitting: list[SongRecord] = field(default_factory=list)
    generating_audio: list[SongRecord] = field(default_factory=list)
    retry_pending: list[SongRecord] = field(default_factory=list)
    stale: list[SongRecord] = field(default_factory=list)
    recent_completed: list[SongRecord] = field(default_factory=list)
    recent_descriptions: list[str] = field(default_factory=list)
    total_songs: int = 0
    transient_count: int = 0
    buffer_count: int = 0
    max_order_index: float = 0.0

    def buffer_deficit(self, target: int) -> int:
        return max(0, int(target) - self.buffer_count)

    @property
    def next_order_index(self) -> float:
        return float(math.ceil(self.max_order_index) + 1)


def stale_reference(song: SongRecord) -> datetime | None:
    """Return the timestamp the stale timer runs from for ``song``."""

    if song.status is SongStatus.GENERATING_AUDIO and song.ace_submitted_at is not None:
        return song.ace_submitted_at
    return song.status_changed_at or song.generation_started_at or song.created_at


def is_stale(song: SongRecord, *, stale_after_s: float, now: datetime) -> bool:
    if song.status not in IN_PROGRESS_STATUSES:
        return False
    elapsed = seconds_since(stale_reference(song), now=now)
    if elapsed is None:
        return False
    return elapsed > stale_after_s


def build_work_queue(
    songs: Iterable[SongRecord],
    *,
    session: SessionRecord,
    stale_after_s: float,
    now: datetime | None = None,
) -> WorkQueueSnapshot:
    """Build the snapshot the scheduler dispatches from.

    Stage lists are ordered by ``order_index``; ``recent_completed`` runs
    newest first. ``buffer_count`` only counts items ahead of the playback
    position when the session reports one.
    """

    moment = now if now is not None else now_utc()
    ordered = sorted(songs, key=lambda song: song.order_index)
    snapshot = WorkQueueSnapshot(session_id=session.id)
    snapshot.total_songs = len(ordered)
    position = session.current_order_index

    for song in ordered:
        status = song.status
        if status is SongStatus.PENDING:
            snapshot.pending.append(song)
        elif status is SongStatus.METADATA_READY:
            snapshot.metadata_ready.append(song)
        elif status is SongStatus.SUBMITTING_TO_ACE:
            snapshot.submitting.append(song)
        elif status is SongStatus.GENERATING_AUDIO:
            snapshot.generating_audio.append(song)
        elif status is SongStatus.RETRY_PENDING:
            snapshot.retry_pending.append(song)

        if (
            song.cover_prompt
            and not song.cover_url
            and song.cover_status is None
            and status not in _COVER_BLOCKED_STATUSES
        ):
            snapshot.needs_cover.append(song)

        if status in TRANSIENT_STATUSES:
            snapshot.transient_count += 1
        if status in BUFFERED_STATUSES and (position is None or song.order_index > position):
            snapshot.buffer_count += 1
        if is_stale(song, stale_after_s=stale_after_s, now=moment):
            snapshot.stale.append(song)

    if ordered:
        snapshot.max_order_index = max(song.order_index for song in ordered)

    completed = [
        song
        for song in reversed(ordered)
        if song.title
        and song.status not in {SongStatus.PENDING, SongStatus.GENERATING_METADATA}
    ]
    snapshot.recent_completed = completed[:RECENT_COMPLETED_LIMIT]
    snapshot.recent_descriptions = [
        song.description for song in completed[:RECENT_DESCRIPTIONS_LIMIT] if song.description
    ]
    return snapshot


__all__ = [
    "RECENT_COMPLETED_LIMIT",
    "WorkQueueSnapshot",
    "build_work_queue",
    "is_stale",
    "stale_reference",
]
