"""Records and the state store contract consumed by the orchestrator."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from songworker.orchestrator.status import SessionMode, SessionStatus, SongStatus

if TYPE_CHECKING:
    from songworker.orchestrator.work_queue import WorkQueueSnapshot


@dataclass(slots=True)
class SessionRecord:
    id: str
    name: str
    prompt: str
    llm_provider: str
    llm_model: str
    mode: SessionMode = SessionMode.ENDLESS
    status: SessionStatus = SessionStatus.ACTIVE
    target_bpm: int | None = None
    target_key: str | None = None
    time_signature: str | None = None
    audio_duration: int | None = None
    lyrics_language: str | None = None
    inference_steps: int | None = None
    lm_temperature: float | None = None
    lm_cfg_scale: float | None = None
    infer_method: str | None = None
    ace_model: str | None = None
    songs_generated: int = 0
    current_order_index: float | None = None
    created_at: datetime | None = None

    @property
    def is_oneshot(self) -> bool:
        return self.mode is SessionMode.ONESHOT


@dataclass(slots=True)
class SongRecord:
    id: str
    session_id: str
    order_index: float
    status: SongStatus
    title: str | None = None
    artist_name: str | None = None
    genre: str | None = None
    sub_genre: str | None = None
    lyrics: str | None = None
    caption: str | None = None
    vocal_style: str | None = None
    mood: str | None = None
    description: str | None = None
    cover_prompt: str | None = None
    cover_url: str | None = None
    cover_status: str | None = None
    bpm: int | None = None
    key_scale: str | None = None
    time_signature: str | None = None
    audio_duration: int | None = None
    language: str | None = None
    llm_provider: str | None = None
    llm_model: str | None = None
    ace_task_id: str | None = None
    ace_submitted_at: datetime | None = None
    ace_audio_path: str | None = None
    audio_url: str | None = None
    storage_path: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    errored_at_status: str | None = None
    is_interrupt: bool = False
    interrupt_prompt: str | None = None
    generation_started_at: datetime | None = None
    generation_completed_at: datetime | None = None
    status_changed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class SongMetadata:
    """Structured result of one text generation call."""

    title: str
    artist_name: str
    genre: str
    sub_genre: str
    lyrics: str
    caption: str
    cover_prompt: str | None = None
    vocal_style: str | None = None
    mood: str | None = None
    description: str | None = None
    language: str | None = None
    bpm: int | None = None
    key_scale: str | None = None
    time_signature: str | None = None
    audio_duration: int | None = None


@dataclass(slots=True, frozen=True)
class WorkerSettings:
    """Worker wide settings read once per tick."""

    text_provider: str | None = None
    text_model: str | None = None
    image_provider: str | None = None
    image_model: str | None = None

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> WorkerSettings:
        def _clean(key: str) -> str | None:
            raw = values.get(key)
            if raw is None:
                return None
            text = str(raw).strip()
            return text or None

        image_provider = _clean("image_provider")
        if image_provider == "ollama":
            image_provider = "comfyui"
        return cls(
            text_provider=_clean("text_provider"),
            text_model=_clean("text_model"),
            image_provider=image_provider,
            image_model=_clean("image_model"),
        )


@dataclass(slots=True)
class NewSession:
    name: str
    prompt: str
    llm_provider: str = "ollama"
    llm_model: str = ""
    mode: SessionMode = SessionMode.ENDLESS
    target_bpm: int | None = None
    target_key: str | None = None
    time_signature: str | None = None
    audio_duration: int | None = None
    lyrics_language: str | None = None
    inference_steps: int | None = None
    lm_temperature: float | None = None
    lm_cfg_scale: float | None = None
    infer_method: str | None = None
    ace_model: str | None = None


class StateStore(Protocol):
    """Persistence operations the orchestrator relies on.

    Every ``claim_*``/status mutation is conditional on the item's current
    status and returns ``False`` when another path already moved it.
    """

    async def list_serviced_sessions(self) -> list[SessionRecord]: ...

    async def get_session(self, session_id: str) -> SessionRecord | None: ...

    async def get_settings(self) -> WorkerSettings: ...

    async def set_setting(self, key: str, value: str | None) -> None: ...

    async def get_work_queue_snapshot(
        self, session_id: str, *, now: datetime | None = None
    ) -> WorkQueueSnapshot: ...

    async def claim_for_metadata(self, song_id: str) -> bool: ...

    async def complete_metadata(
        self,
        song_id: str,
        metadata: SongMetadata,
        *,
        llm_provider: str,
        llm_model: str,
    ) -> bool: ...

    async def claim_for_cover(self, song_id: str) -> bool: ...

    async def complete_cover(self, song_id: str, cover_url: str) -> bool: ...

    async def fail_cover(self, song_id: str) -> bool: ...

    async def claim_for_audio(self, song_id: str) -> bool: ...

    async def update_ace_task(self, song_id: str, task_id: str) -> bool: ...

    async def claim_for_saving(self, song_id: str) -> bool: ...

    async def update_storage_path(
        self, song_id: str, storage_path: str, ace_audio_path: str
    ) -> bool: ...

    async def mark_ready(self, song_id: str, audio_url: str) -> bool: ...

    async def mark_error(
        self,
        song_id: str,
        error_message: str,
        *,
        errored_at_status: str,
        auto_retry_max: int = 0,
    ) -> bool: ...

    async def revert_to_metadata_ready(self, song_id: str) -> bool: ...

    async def retry_errored_song(self, song_id: str) -> bool: ...

    async def request_retry(self, song_id: str) -> bool: ...

    async def abandon_retry(self, song_id: str, error_message: str) -> bool: ...

    async def revert_transient_statuses(self, session_id: str) -> int: ...

    async def recover_from_restart(self, session_id: str) -> int: ...

    async def update_session_status(
        self, session_id: str, status: SessionStatus
    ) -> bool: ...

    async def request_close(self, session_id: str) -> bool: ...

    async def increment_songs_generated(self, session_id: str) -> None: ...

    async def insert_pending_work_item(
        self, session_id: str, order_index: float
    ) -> SongRecord: ...

    async def insert_interrupt(
        self, session_id: str, prompt: str, *, after_order_index: float
    ) -> SongRecord: ...

    async def delete_work_item(self, song_id: str) -> bool: ...

    async def create_session(self, new_session: NewSession) -> SessionRecord: ...

    async def list_songs(self, session_id: str) -> Sequence[SongRecord]: ...


__all__ = [
    "NewSession",
    "SessionRecord",
    "SongMetadata",
    "SongRecord",
    "StateStore",
    "WorkerSettings",
]
