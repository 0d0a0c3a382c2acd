from __future__ import annotations

from songworker.orchestrator.ordering import pick_next_song
from songworker.orchestrator.status import SongStatus
from songworker.store import SongRecord


def _song(song_id: str, order_index: float, status: SongStatus = SongStatus.READY) -> SongRecord:
    return SongRecord(id=song_id, session_id="s", order_index=order_index, status=status)


SONGS = [
    _song("a", 1.0),
    _song("b", 2.0),
    _song("i", 1.5),
    _song("c", 3.0, SongStatus.GENERATING_AUDIO),
    _song("d", 4.0),
    _song("p", 5.0, SongStatus.PLAYED),
]


def test_interrupt_plays_right_after_its_anchor():
    nxt = pick_next_song(SONGS, current_song_id="a", current_order_index=1.0)

    assert nxt is not None and nxt.id == "i"


def test_unfinished_songs_are_skipped():
    nxt = pick_next_song(SONGS, current_song_id="b", current_order_index=2.0)

    assert nxt is not None and nxt.id == "d"


def test_wraps_to_the_lowest_ready_song():
    nxt = pick_next_song(SONGS, current_song_id="d", current_order_index=4.0)

    assert nxt is not None and nxt.id == "a"


def test_without_position_starts_at_the_beginning():
    nxt = pick_next_song(SONGS)

    assert nxt is not None and nxt.id == "a"


def test_current_song_is_never_picked_again():
    assert pick_next_song([_song("a", 1.0)], current_song_id="a", current_order_index=1.0) is None
    assert pick_next_song([]) is None
