import pytest

from songworker.errors import InvalidTransitionError
from songworker.orchestrator.status import (
    SESSION_TRANSITIONS,
    SONG_TRANSITIONS,
    TRANSIENT_STATUSES,
    SessionStatus,
    SongStatus,
    ensure_session_transition,
    ensure_song_transition,
    is_valid_session_transition,
    is_valid_song_transition,
)

S = SongStatus

ALLOWED_SONG_TRANSITIONS = {
    (S.PENDING, S.GENERATING_METADATA),
    (S.PENDING, S.ERROR),
    (S.GENERATING_METADATA, S.METADATA_READY),
    (S.GENERATING_METADATA, S.ERROR),
    (S.GENERATING_METADATA, S.RETRY_PENDING),
    (S.GENERATING_METADATA, S.PENDING),
    (S.METADATA_READY, S.SUBMITTING_TO_ACE),
    (S.METADATA_READY, S.ERROR),
    (S.METADATA_READY, S.RETRY_PENDING),
    (S.SUBMITTING_TO_ACE, S.GENERATING_AUDIO),
    (S.SUBMITTING_TO_ACE, S.ERROR),
    (S.SUBMITTING_TO_ACE, S.RETRY_PENDING),
    (S.SUBMITTING_TO_ACE, S.METADATA_READY),
    (S.GENERATING_AUDIO, S.SAVING),
    (S.GENERATING_AUDIO, S.ERROR),
    (S.GENERATING_AUDIO, S.RETRY_PENDING),
    (S.GENERATING_AUDIO, S.METADATA_READY),
    (S.SAVING, S.READY),
    (S.SAVING, S.ERROR),
    (S.SAVING, S.GENERATING_AUDIO),
    (S.SAVING, S.METADATA_READY),
    (S.READY, S.PLAYED),
    (S.PLAYED, S.READY),
    (S.ERROR, S.PENDING),
    (S.ERROR, S.METADATA_READY),
    (S.ERROR, S.RETRY_PENDING),
    (S.RETRY_PENDING, S.PENDING),
    (S.RETRY_PENDING, S.METADATA_READY),
    (S.RETRY_PENDING, S.ERROR),
}


def test_song_transition_table_is_exhaustive() -> None:
    assert set(SONG_TRANSITIONS) == set(SongStatus)
    for current in SongStatus:
        for target in SongStatus:
            expected = (current, target) in ALLOWED_SONG_TRANSITIONS
            assert is_valid_song_transition(current, target) is expected, (current, target)


def test_song_transition_accepts_raw_values() -> None:
    assert is_valid_song_transition("pending", "generating_metadata")
    assert not is_valid_song_transition("pending", "ready")
    assert not is_valid_song_transition("unknown", "pending")


def test_ensure_song_transition_raises_with_meta() -> None:
    with pytest.raises(InvalidTransitionError) as excinfo:
        ensure_song_transition(SongStatus.READY, SongStatus.PENDING)

    error = excinfo.value
    assert error.entity == "song"
    assert error.to_payload()["error"]["meta"] == {
        "entity": "song",
        "from": "ready",
        "to": "pending",
    }


def test_session_transitions() -> None:
    assert set(SESSION_TRANSITIONS) == set(SessionStatus)
    assert is_valid_session_transition(SessionStatus.ACTIVE, SessionStatus.CLOSING)
    assert is_valid_session_transition(SessionStatus.CLOSING, SessionStatus.CLOSED)
    assert is_valid_session_transition(SessionStatus.CLOSING, SessionStatus.ACTIVE)
    assert not is_valid_session_transition(SessionStatus.CLOSED, SessionStatus.ACTIVE)

    with pytest.raises(InvalidTransitionError):
        ensure_session_transition(SessionStatus.CLOSED, SessionStatus.CLOSING)


def test_transient_statuses_exclude_terminal_states() -> None:
    assert SongStatus.RETRY_PENDING in TRANSIENT_STATUSES
    assert SongStatus.METADATA_READY in TRANSIENT_STATUSES
    for status in (SongStatus.READY, SongStatus.PLAYED, SongStatus.ERROR):
        assert status not in TRANSIENT_STATUSES
