"""Playback ordering over a session's ready songs."""

from __future__ import annotations

from collections.abc import Iterable

from songworker.orchestrator.status import SongStatus
from songworker.store.base import SongRecord


def pick_next_song(
    songs: Iterable[SongRecord],
    current_song_id: str | None = None,
    current_order_index: float | None = None,
) -> SongRecord | None:
    """Return the ready song that plays after the current position.

    The next song is the ready song with the smallest order index strictly
    greater than the position. When none is ahead, playback wraps to the
    lowest ready song. Interrupts inserted at ``previous + 0.5`` therefore
    play right after ``previous``.
    """

    ready = sorted(
        (song for song in songs if song.status is SongStatus.READY),
        key=lambda song: song.order_index,
    )
    if current_song_id is not None:
        ready = [song for song in ready if song.id != current_song_id]
    if not ready:
        return None
    if current_order_index is None:
        return ready[0]
    for song in ready:
        if song.order_index > current_order_index:
            return song
    return ready[0]


__all__ = ["pick_next_song"]
