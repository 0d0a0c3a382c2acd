"""State store contract and its SQL implementation."""

from songworker.store.base import (
    NewSession,
    SessionRecord,
    SongMetadata,
    SongRecord,
    StateStore,
    WorkerSettings,
)
from songworker.store.sql import SqlStateStore

__all__ = [
    "NewSession",
    "SessionRecord",
    "SongMetadata",
    "SongRecord",
    "SqlStateStore",
    "StateStore",
    "WorkerSettings",
]
