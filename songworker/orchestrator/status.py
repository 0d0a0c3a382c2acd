"""Status vocabulary and transition rules for songs and sessions.

Every status-changing write in the worker consults :func:`ensure_song_transition`
or :func:`ensure_session_transition` first, so an illegal change is rejected
before anything reaches the state store.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

from songworker.errors import InvalidTransitionError


class SongStatus(str, Enum):
    """Lifecycle states of a song work item."""

    PENDING = "pending"
    GENERATING_METADATA = "generating_metadata"
    METADATA_READY = "metadata_ready"
    SUBMITTING_TO_ACE = "submitting_to_ace"
    GENERATING_AUDIO = "generating_audio"
    SAVING = "saving"
    READY = "ready"
    PLAYED = "played"
    ERROR = "error"
    RETRY_PENDING = "retry_pending"


class SessionStatus(str, Enum):
    """Lifecycle states of a generation session."""

    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionMode(str, Enum):
    ENDLESS = "endless"
    ONESHOT = "oneshot"


class CoverStatus(str, Enum):
    GENERATING = "generating"
    DONE = "done"
    FAILED = "failed"


SONG_TRANSITIONS: Mapping[SongStatus, frozenset[SongStatus]] = {
    SongStatus.PENDING: frozenset({SongStatus.GENERATING_METADATA, SongStatus.ERROR}),
    SongStatus.GENERATING_METADATA: frozenset(
        {
            SongStatus.METADATA_READY,
            SongStatus.ERROR,
            SongStatus.RETRY_PENDING,
            SongStatus.PENDING,
        }
    ),
    SongStatus.METADATA_READY: frozenset(
        {SongStatus.SUBMITTING_TO_ACE, SongStatus.ERROR, SongStatus.RETRY_PENDING}
    ),
    SongStatus.SUBMITTING_TO_ACE: frozenset(
        {
            SongStatus.GENERATING_AUDIO,
            SongStatus.ERROR,
            SongStatus.RETRY_PENDING,
            SongStatus.METADATA_READY,
        }
    ),
    SongStatus.GENERATING_AUDIO: frozenset(
        {
            SongStatus.SAVING,
            SongStatus.ERROR,
            SongStatus.RETRY_PENDING,
            SongStatus.METADATA_READY,
        }
    ),
    SongStatus.SAVING: frozenset(
        {
            SongStatus.READY,
            SongStatus.ERROR,
            SongStatus.GENERATING_AUDIO,
            SongStatus.METADATA_READY,
        }
    ),
    SongStatus.READY: frozenset({SongStatus.PLAYED}),
    SongStatus.PLAYED: frozenset({SongStatus.READY}),
    SongStatus.ERROR: frozenset(
        {SongStatus.PENDING, SongStatus.METADATA_READY, SongStatus.RETRY_PENDING}
    ),
    SongStatus.RETRY_PENDING: frozenset(
        {SongStatus.PENDING, SongStatus.METADATA_READY, SongStatus.ERROR}
    ),
}

SESSION_TRANSITIONS: Mapping[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({SessionStatus.CLOSING, SessionStatus.CLOSED}),
    SessionStatus.CLOSING: frozenset({SessionStatus.ACTIVE, SessionStatus.CLOSED}),
    SessionStatus.CLOSED: frozenset(),
}

TRANSIENT_STATUSES: frozenset[SongStatus] = frozenset(
    {
        SongStatus.PENDING,
        SongStatus.GENERATING_METADATA,
        SongStatus.METADATA_READY,
        SongStatus.SUBMITTING_TO_ACE,
        SongStatus.GENERATING_AUDIO,
        SongStatus.SAVING,
        SongStatus.RETRY_PENDING,
    }
)

IN_PROGRESS_STATUSES: frozenset[SongStatus] = frozenset(
    {
        SongStatus.GENERATING_METADATA,
        SongStatus.SUBMITTING_TO_ACE,
        SongStatus.GENERATING_AUDIO,
        SongStatus.SAVING,
    }
)

BUFFERED_STATUSES: frozenset[SongStatus] = frozenset(
    {
        SongStatus.PENDING,
        SongStatus.GENERATING_METADATA,
        SongStatus.METADATA_READY,
        SongStatus.SUBMITTING_TO_ACE,
        SongStatus.GENERATING_AUDIO,
        SongStatus.SAVING,
        SongStatus.READY,
    }
)

SERVICED_SESSION_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.ACTIVE, SessionStatus.CLOSING}
)


def _coerce_song(value: SongStatus | str) -> SongStatus | None:
    try:
        return SongStatus(value)
    except ValueError:
        return None


def _coerce_session(value: SessionStatus | str) -> SessionStatus | None:
    try:
        return SessionStatus(value)
    except ValueError:
        return None


def is_valid_song_transition(current: SongStatus | str, target: SongStatus | str) -> bool:
    """Return ``True`` when ``current -> target`` appears in the song table."""

    source = _coerce_song(current)
    destination = _coerce_song(target)
    if source is None or destination is None:
        return False
    return destination in SONG_TRANSITIONS[source]


def is_valid_session_transition(
    current: SessionStatus | str, target: SessionStatus | str
) -> bool:
    source = _coerce_session(current)
    destination = _coerce_session(target)
    if source is None or destination is None:
        return False
    return destination in SESSION_TRANSITIONS[source]


def ensure_song_transition(current: SongStatus | str, target: SongStatus | str) -> None:
    if not is_valid_song_transition(current, target):
        raise InvalidTransitionError("song", _label(current), _label(target))


def ensure_session_transition(
    current: SessionStatus | str, target: SessionStatus | str
) -> None:
    if not is_valid_session_transition(current, target):
        raise InvalidTransitionError("session", _label(current), _label(target))


def _label(value: Enum | str) -> str:
    return value.value if isinstance(value, Enum) else str(value)


__all__ = [
    "BUFFERED_STATUSES",
    "CoverStatus",
    "IN_PROGRESS_STATUSES",
    "SERVICED_SESSION_STATUSES",
    "SESSION_TRANSITIONS",
    "SONG_TRANSITIONS",
    "SessionMode",
    "SessionStatus",
    "SongStatus",
    "TRANSIENT_STATUSES",
    "ensure_session_transition",
    "ensure_song_transition",
    "is_valid_session_transition",
    "is_valid_song_transition",
]
