"""SQLAlchemy backed implementation of :class:`StateStore`.

Each public coroutine runs one unit of work in a worker thread. Status
changes are validated against the transition table and then applied with a
conditional ``UPDATE ... WHERE status = :expected`` so that concurrent paths
racing for the same song resolve to exactly one winner.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Mapping
from datetime import datetime
from typing import Any, TypeVar
import uuid

from sqlalchemy import delete, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session as DbSession

from songworker.config import DEFAULT_STALE_TIMEOUT_S
from songworker.db import (
    SessionFactory,
    build_engine,
    create_session_factory,
    init_db,
    run_session,
)
from songworker.errors import NotFoundError, StateStoreError, StateStoreUnavailableError
from songworker.models import Session, Setting, Song
from songworker.orchestrator.status import (
    SERVICED_SESSION_STATUSES,
    SessionMode,
    SessionStatus,
    SongStatus,
    ensure_session_transition,
    ensure_song_transition,
    is_valid_song_transition,
)
from songworker.orchestrator.work_queue import WorkQueueSnapshot, build_work_queue
from songworker.store.base import (
    NewSession,
    SessionRecord,
    SongMetadata,
    SongRecord,
    WorkerSettings,
)
from songworker.utils.time import as_utc, now_utc

T = TypeVar("T")


def _utcnow() -> datetime:
    return now_utc().replace(tzinfo=None)


# Status a song is moved to when the worker that owned it went away.
_REVERT_TARGETS: Mapping[SongStatus, SongStatus] = {
    SongStatus.GENERATING_METADATA: SongStatus.PENDING,
    SongStatus.SUBMITTING_TO_ACE: SongStatus.METADATA_READY,
    SongStatus.GENERATING_AUDIO: SongStatus.METADATA_READY,
    SongStatus.SAVING: SongStatus.METADATA_READY,
}

# Restart recovery keeps generating_audio so polling resumes with the stored task id.
_RECOVERY_TARGETS: Mapping[SongStatus, SongStatus] = {
    SongStatus.GENERATING_METADATA: SongStatus.PENDING,
    SongStatus.SUBMITTING_TO_ACE: SongStatus.METADATA_READY,
    SongStatus.SAVING: SongStatus.GENERATING_AUDIO,
}

_CLEARED_SYNTHESIS_FIELDS: Mapping[str, Any] = {
    "ace_task_id": None,
    "ace_submitted_at": None,
    "ace_audio_path": None,
}


def _session_to_record(row: Session) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        name=row.name,
        prompt=row.prompt,
        llm_provider=row.llm_provider,
        llm_model=row.llm_model,
        mode=SessionMode(row.mode),
        status=SessionStatus(row.status),
        target_bpm=row.target_bpm,
        target_key=row.target_key,
        time_signature=row.time_signature,
        audio_duration=row.audio_duration,
        lyrics_language=row.lyrics_language,
        inference_steps=row.inference_steps,
        lm_temperature=row.lm_temperature,
        lm_cfg_scale=row.lm_cfg_scale,
        infer_method=row.infer_method,
        ace_model=row.ace_model,
        songs_generated=int(row.songs_generated or 0),
        current_order_index=row.current_order_index,
        created_at=as_utc(row.created_at),
    )


def _song_to_record(row: Song) -> SongRecord:
    return SongRecord(
        id=row.id,
        session_id=row.session_id,
        order_index=float(row.order_index),
        status=SongStatus(row.status),
        title=row.title,
        artist_name=row.artist_name,
        genre=row.genre,
        sub_genre=row.sub_genre,
        lyrics=row.lyrics,
        caption=row.caption,
        vocal_style=row.vocal_style,
        mood=row.mood,
        description=row.description,
        cover_prompt=row.cover_prompt,
        cover_url=row.cover_url,
        cover_status=row.cover_status,
        bpm=row.bpm,
        key_scale=row.key_scale,
        time_signature=row.time_signature,
        audio_duration=row.audio_duration,
        language=row.language,
        llm_provider=row.llm_provider,
        llm_model=row.llm_model,
        ace_task_id=row.ace_task_id,
        ace_submitted_at=as_utc(row.ace_submitted_at),
        ace_audio_path=row.ace_audio_path,
        audio_url=row.audio_url,
        storage_path=row.storage_path,
        error_message=row.error_message,
        retry_count=int(row.retry_count or 0),
        errored_at_status=row.errored_at_status,
        is_interrupt=bool(row.is_interrupt),
        interrupt_prompt=row.interrupt_prompt,
        generation_started_at=as_utc(row.generation_started_at),
        generation_completed_at=as_utc(row.generation_completed_at),
        status_changed_at=as_utc(row.status_changed_at),
        created_at=as_utc(row.created_at),
    )


def _current_status(db: DbSession, song_id: str) -> SongStatus | None:
    raw = db.execute(select(Song.status).where(Song.id == song_id)).scalar_one_or_none()
    if raw is None:
        return None
    return SongStatus(raw)


def _apply_transition(
    db: DbSession,
    song_id: str,
    current: SongStatus,
    target: SongStatus,
    values: Mapping[str, Any] | None = None,
) -> bool:
    ensure_song_transition(current, target)
    payload: dict[str, Any] = dict(values or {})
    payload["status"] = target.value
    payload["status_changed_at"] = _utcnow()
    result = db.execute(
        update(Song)
        .where(Song.id == song_id, Song.status == current.value)
        .values(**payload)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _transition(
    db: DbSession,
    song_id: str,
    *,
    expected: Collection[SongStatus],
    target: SongStatus,
    values: Mapping[str, Any] | None = None,
) -> bool:
    current = _current_status(db, song_id)
    if current is None or current not in expected:
        return False
    return _apply_transition(db, song_id, current, target, values)


def _revert_session_songs(
    db: DbSession,
    session_id: str,
    targets: Mapping[SongStatus, SongStatus],
) -> int:
    rows = db.execute(
        select(Song.id, Song.status).where(
            Song.session_id == session_id,
            Song.status.in_([status.value for status in targets]),
        )
    ).all()
    reverted = 0
    for song_id, raw_status in rows:
        current = SongStatus(raw_status)
        target = targets[current]
        values: dict[str, Any] = {}
        if target is SongStatus.METADATA_READY:
            values.update(_CLEARED_SYNTHESIS_FIELDS)
        if _apply_transition(db, song_id, current, target, values):
            reverted += 1
    return reverted


class SqlStateStore:
    """State store persisted through SQLAlchemy."""

    def __init__(
        self,
        factory: SessionFactory,
        *,
        stale_after_s: float = DEFAULT_STALE_TIMEOUT_S,
    ) -> None:
        self._factory = factory
        self._stale_after_s = float(stale_after_s)

    @classmethod
    def from_url(
        cls,
        database_url: str,
        *,
        stale_after_s: float = DEFAULT_STALE_TIMEOUT_S,
    ) -> SqlStateStore:
        engine = build_engine(database_url)
        init_db(engine)
        return cls(create_session_factory(engine), stale_after_s=stale_after_s)

    async def _run(self, func: Callable[[DbSession], T]) -> T:
        try:
            return await run_session(func, factory=self._factory)
        except OperationalError as exc:
            raise StateStoreUnavailableError(str(exc.orig or exc)) from exc
        except SQLAlchemyError as exc:
            raise StateStoreError(str(exc)) from exc

    # Sessions -----------------------------------------------------------------

    async def list_serviced_sessions(self) -> list[SessionRecord]:
        def _query(db: DbSession) -> list[SessionRecord]:
            rows = db.execute(
                select(Session)
                .where(Session.status.in_([s.value for s in SERVICED_SESSION_STATUSES]))
                .order_by(Session.created_at.asc(), Session.id.asc())
            ).scalars()
            return [_session_to_record(row) for row in rows]

        return await self._run(_query)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        def _query(db: DbSession) -> SessionRecord | None:
            row = db.get(Session, session_id)
            return _session_to_record(row) if row is not None else None

        return await self._run(_query)

    async def create_session(self, new_session: NewSession) -> SessionRecord:
        def _create(db: DbSession) -> SessionRecord:
            row = Session(
                id=str(uuid.uuid4()),
                name=new_session.name,
                prompt=new_session.prompt,
                llm_provider=new_session.llm_provider,
                llm_model=new_session.llm_model,
                mode=new_session.mode.value,
                status=SessionStatus.ACTIVE.value,
                target_bpm=new_session.target_bpm,
                target_key=new_session.target_key,
                time_signature=new_session.time_signature,
                audio_duration=new_session.audio_duration,
                lyrics_language=new_session.lyrics_language,
                inference_steps=new_session.inference_steps,
                lm_temperature=new_session.lm_temperature,
                lm_cfg_scale=new_session.lm_cfg_scale,
                infer_method=new_session.infer_method,
                ace_model=new_session.ace_model,
                songs_generated=0,
            )
            db.add(row)
            db.flush()
            return _session_to_record(row)

        return await self._run(_create)

    async def update_session_status(self, session_id: str, status: SessionStatus) -> bool:
        target = SessionStatus(status)

        def _update(db: DbSession) -> bool:
            raw = db.execute(
                select(Session.status).where(Session.id == session_id)
            ).scalar_one_or_none()
            if raw is None:
                return False
            current = SessionStatus(raw)
            ensure_session_transition(current, target)
            result = db.execute(
                update(Session)
                .where(Session.id == session_id, Session.status == current.value)
                .values(status=target.value, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return await self._run(_update)

    async def request_close(self, session_id: str) -> bool:
        """Move an active session to ``closing``; ``False`` when it is not active."""

        def _close(db: DbSession) -> bool:
            raw = db.execute(
                select(Session.status).where(Session.id == session_id)
            ).scalar_one_or_none()
            if raw is None:
                raise NotFoundError(f"Session {session_id} not found.")
            if SessionStatus(raw) is not SessionStatus.ACTIVE:
                return False
            ensure_session_transition(SessionStatus.ACTIVE, SessionStatus.CLOSING)
            result = db.execute(
                update(Session)
                .where(Session.id == session_id, Session.status == SessionStatus.ACTIVE.value)
                .values(status=SessionStatus.CLOSING.value, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return await self._run(_close)

    async def increment_songs_generated(self, session_id: str) -> None:
        def _increment(db: DbSession) -> None:
            db.execute(
                update(Session)
                .where(Session.id == session_id)
                .values(songs_generated=Session.songs_generated + 1, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )

        await self._run(_increment)

    async def set_playback_position(self, session_id: str, order_index: float | None) -> None:
        def _update(db: DbSession) -> None:
            db.execute(
                update(Session)
                .where(Session.id == session_id)
                .values(current_order_index=order_index, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )

        await self._run(_update)

    # Settings -----------------------------------------------------------------

    async def get_settings(self) -> WorkerSettings:
        def _query(db: DbSession) -> WorkerSettings:
            rows = db.execute(select(Setting.key, Setting.value)).all()
            return WorkerSettings.from_mapping({key: value for key, value in rows})

        return await self._run(_query)

    async def set_setting(self, key: str, value: str | None) -> None:
        def _upsert(db: DbSession) -> None:
            db.merge(Setting(key=key, value=value, updated_at=_utcnow()))

        await self._run(_upsert)

    # Queue reads --------------------------------------------------------------

    async def get_work_queue_snapshot(
        self, session_id: str, *, now: datetime | None = None
    ) -> WorkQueueSnapshot:
        def _query(db: DbSession) -> tuple[SessionRecord, list[SongRecord]]:
            row = db.get(Session, session_id)
            if row is None:
                raise NotFoundError(f"Session {session_id} not found.")
            songs = db.execute(
                select(Song).where(Song.session_id == session_id)
            ).scalars()
            return _session_to_record(row), [_song_to_record(song) for song in songs]

        session, songs = await self._run(_query)
        return build_work_queue(
            songs,
            session=session,
            stale_after_s=self._stale_after_s,
            now=now,
        )

    async def list_songs(self, session_id: str) -> list[SongRecord]:
        def _query(db: DbSession) -> list[SongRecord]:
            rows = db.execute(
                select(Song)
                .where(Song.session_id == session_id)
                .order_by(Song.order_index.asc())
            ).scalars()
            return [_song_to_record(row) for row in rows]

        return await self._run(_query)

    async def get_song(self, song_id: str) -> SongRecord | None:
        def _query(db: DbSession) -> SongRecord | None:
            row = db.get(Song, song_id)
            return _song_to_record(row) if row is not None else None

        return await self._run(_query)

    # Inserts and deletes ------------------------------------------------------

    async def insert_pending_work_item(self, session_id: str, order_index: float) -> SongRecord:
        def _insert(db: DbSession) -> SongRecord:
            row = Song(
                id=str(uuid.uuid4()),
                session_id=session_id,
                order_index=float(order_index),
                status=SongStatus.PENDING.value,
                retry_count=0,
                is_interrupt=False,
            )
            db.add(row)
            db.flush()
            return _song_to_record(row)

        return await self._run(_insert)

    async def insert_interrupt(
        self, session_id: str, prompt: str, *, after_order_index: float
    ) -> SongRecord:
        """Insert a steering song that plays right after ``after_order_index``."""

        if not prompt or not prompt.strip():
            raise ValueError("Interrupt prompt must not be empty")

        def _insert(db: DbSession) -> SongRecord:
            if db.get(Session, session_id) is None:
                raise NotFoundError(f"Session {session_id} not found.")
            row = Song(
                id=str(uuid.uuid4()),
                session_id=session_id,
                order_index=float(after_order_index) + 0.5,
                status=SongStatus.PENDING.value,
                retry_count=0,
                is_interrupt=True,
                interrupt_prompt=prompt.strip(),
            )
            db.add(row)
            db.flush()
            return _song_to_record(row)

        return await self._run(_insert)

    async def delete_work_item(self, song_id: str) -> bool:
        def _delete(db: DbSession) -> bool:
            result = db.execute(delete(Song).where(Song.id == song_id))
            return result.rowcount == 1

        return await self._run(_delete)

    # Stage claims -------------------------------------------------------------

    async def claim_for_metadata(self, song_id: str) -> bool:
        def _claim(db: DbSession) -> bool:
            return _transition(
                db,
                song_id,
                expected={SongStatus.PENDING},
                target=SongStatus.GENERATING_METADATA,
                values={"generation_started_at": _utcnow()},
            )

        return await self._run(_claim)

    async def complete_metadata(
        self,
        song_id: str,
        metadata: SongMetadata,
        *,
        llm_provider: str,
        llm_model: str,
    ) -> bool:
        values = {
            "title": metadata.title,
            "artist_name": metadata.artist_name,
            "genre": metadata.genre,
            "sub_genre": metadata.sub_genre or metadata.genre,
            "lyrics": metadata.lyrics,
            "caption": metadata.caption,
            "vocal_style": metadata.vocal_style,
            "mood": metadata.mood,
            "description": metadata.description,
            "language": metadata.language,
            "cover_prompt": metadata.cover_prompt,
            "bpm": metadata.bpm,
            "key_scale": metadata.key_scale,
            "time_signature": metadata.time_signature,
            "audio_duration": metadata.audio_duration,
            "llm_provider": llm_provider,
            "llm_model": llm_model,
        }

        def _complete(db: DbSession) -> bool:
            return _transition(
                db,
                song_id,
                expected={SongStatus.GENERATING_METADATA},
                target=SongStatus.METADATA_READY,
                values=values,
            )

        return await self._run(_complete)

    async def claim_for_cover(self, song_id: str) -> bool:
        def _claim(db: DbSession) -> bool:
            result = db.execute(
                update(Song)
                .where(
                    Song.id == song_id,
                    Song.cover_status.is_(None),
                    Song.cover_url.is_(None),
                )
                .values(cover_status="generating")
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return await self._run(_claim)

    async def complete_cover(self, song_id: str, cover_url: str) -> bool:
        def _complete(db: DbSession) -> bool:
            result = db.execute(
                update(Song)
                .where(Song.id == song_id, Song.cover_status == "generating")
                .values(cover_url=cover_url, cover_status="done")
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return await self._run(_complete)

    async def fail_cover(self, song_id: str) -> bool:
        def _fail(db: DbSession) -> bool:
            result = db.execute(
                update(Song)
                .where(Song.id == song_id, Song.cover_status == "generating")
                .values(cover_status="failed")
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return await self._run(_fail)

    async def claim_for_audio(self, song_id: str) -> bool:
        """Claim a metadata-ready song unless its session already has audio in flight."""

        def _claim(db: DbSession) -> bool:
            session_id = db.execute(
                select(Song.session_id).where(Song.id == song_id)
            ).scalar_one_or_none()
            if session_id is None:
                return False
            busy = db.execute(
                select(Song.id)
                .where(
                    Song.session_id == session_id,
                    Song.status.in_(
                        [
                            SongStatus.SUBMITTING_TO_ACE.value,
                            SongStatus.GENERATING_AUDIO.value,
                        ]
                    ),
                )
                .limit(1)
            ).first()
            if busy is not None:
                return False
            return _transition(
                db,
                song_id,
                expected={SongStatus.METADATA_READY},
                target=SongStatus.SUBMITTING_TO_ACE,
            )

        return await self._run(_claim)

    async def update_ace_task(self, song_id: str, task_id: str) -> bool:
        def _update(db: DbSession) -> bool:
            return _transition(
                db,
                song_id,
                expected={SongStatus.SUBMITTING_TO_ACE},
                target=SongStatus.GENERATING_AUDIO,
                values={"ace_task_id": task_id, "ace_submitted_at": _utcnow()},
            )

        return await self._run(_update)

    async def claim_for_saving(self, song_id: str) -> bool:
        def _claim(db: DbSession) -> bool:
            return _transition(
                db,
                song_id,
                expected={SongStatus.GENERATING_AUDIO},
                target=SongStatus.SAVING,
            )

        return await self._run(_claim)

    async def update_storage_path(
        self, song_id: str, storage_path: str, ace_audio_path: str
    ) -> bool:
        def _update(db: DbSession) -> bool:
            result = db.execute(
                update(Song)
                .where(Song.id == song_id)
                .values(storage_path=storage_path, ace_audio_path=ace_audio_path)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return await self._run(_update)

    async def mark_ready(self, song_id: str, audio_url: str) -> bool:
        def _ready(db: DbSession) -> bool:
            return _transition(
                db,
                song_id,
                expected={SongStatus.SAVING},
                target=SongStatus.READY,
                values={"audio_url": audio_url, "generation_completed_at": _utcnow()},
            )

        return await self._run(_ready)

    async def mark_error(
        self,
        song_id: str,
        error_message: str,
        *,
        errored_at_status: str,
        auto_retry_max: int = 0,
    ) -> bool:
        """Record a failure for a song still in ``errored_at_status``.

        The song moves to ``retry_pending`` while its retry budget lasts and
        to ``error`` otherwise. ``False`` means the song already moved on.
        """

        origin = SongStatus(errored_at_status)

        def _mark(db: DbSession) -> bool:
            row = db.execute(
                select(Song.status, Song.retry_count).where(Song.id == song_id)
            ).one_or_none()
            if row is None or SongStatus(row.status) is not origin:
                return False
            target = SongStatus.ERROR
            if int(row.retry_count or 0) < auto_retry_max and is_valid_song_transition(
                origin, SongStatus.RETRY_PENDING
            ):
                target = SongStatus.RETRY_PENDING
            return _apply_transition(
                db,
                song_id,
                origin,
                target,
                {"error_message": error_message, "errored_at_status": origin.value},
            )

        return await self._run(_mark)

    async def revert_to_metadata_ready(self, song_id: str) -> bool:
        def _revert(db: DbSession) -> bool:
            return _transition(
                db,
                song_id,
                expected={
                    SongStatus.SUBMITTING_TO_ACE,
                    SongStatus.GENERATING_AUDIO,
                    SongStatus.SAVING,
                },
                target=SongStatus.METADATA_READY,
                values=_CLEARED_SYNTHESIS_FIELDS,
            )

        return await self._run(_revert)

    async def retry_errored_song(self, song_id: str) -> bool:
        def _retry(db: DbSession) -> bool:
            row = db.execute(
                select(Song.status, Song.errored_at_status).where(Song.id == song_id)
            ).one_or_none()
            if row is None or SongStatus(row.status) is not SongStatus.RETRY_PENDING:
                return False
            if row.errored_at_status == SongStatus.GENERATING_METADATA.value:
                target = SongStatus.PENDING
            else:
                target = SongStatus.METADATA_READY
            return _apply_transition(
                db,
                song_id,
                SongStatus.RETRY_PENDING,
                target,
                {
                    **_CLEARED_SYNTHESIS_FIELDS,
                    "retry_count": Song.retry_count + 1,
                    "error_message": None,
                    "errored_at_status": None,
                    "generation_started_at": _utcnow(),
                },
            )

        return await self._run(_retry)

    async def request_retry(self, song_id: str) -> bool:
        """Queue an errored song for the retry processor."""

        def _request(db: DbSession) -> bool:
            current = _current_status(db, song_id)
            if current is None:
                raise NotFoundError(f"Song {song_id} not found.")
            if current is not SongStatus.ERROR:
                return False
            return _apply_transition(db, song_id, current, SongStatus.RETRY_PENDING)

        return await self._run(_request)

    async def abandon_retry(self, song_id: str, error_message: str) -> bool:
        """Fail a song waiting for a retry, keeping the status it errored at."""

        def _abandon(db: DbSession) -> bool:
            return _transition(
                db,
                song_id,
                expected={SongStatus.RETRY_PENDING},
                target=SongStatus.ERROR,
                values={"error_message": error_message},
            )

        return await self._run(_abandon)

    # Bulk reverts -------------------------------------------------------------

    async def revert_transient_statuses(self, session_id: str) -> int:
        def _revert(db: DbSession) -> int:
            return _revert_session_songs(db, session_id, _REVERT_TARGETS)

        return await self._run(_revert)

    async def recover_from_restart(self, session_id: str) -> int:
        def _recover(db: DbSession) -> int:
            recovered = _revert_session_songs(db, session_id, _RECOVERY_TARGETS)
            db.execute(
                update(Song)
                .where(Song.session_id == session_id, Song.cover_status == "generating")
                .values(cover_status=None)
                .execution_options(synchronize_session=False)
            )
            return recovered

        return await self._run(_recover)


__all__ = ["SqlStateStore"]
