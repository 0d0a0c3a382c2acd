"""Fakes and builders shared by the worker tests."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
import random
from typing import Any

from sqlalchemy import update

from songworker.config import OrchestratorConfig, ProviderConfig
from songworker.models import Song
from songworker.orchestrator.processors import ProcessorDeps
from songworker.orchestrator.status import SessionMode, SongStatus
from songworker.providers.base import (
    AudioPollResult,
    AudioSubmitRequest,
    AudioTaskStatus,
    CoverImage,
    TextGenerationParams,
    TrimResult,
)
from songworker.store import NewSession, SessionRecord, SongMetadata, SongRecord
from songworker.store.sql import SqlStateStore
from songworker.utils.time import now_utc


def make_metadata(index: int = 1, **overrides: Any) -> SongMetadata:
    values: dict[str, Any] = {
        "title": f"Song {index}",
        "artist_name": f"Artist {index}",
        "genre": "Electronic",
        "sub_genre": "Synthwave",
        "lyrics": "[Verse 1]\nNeon rain\n[Chorus]\nDrive on",
        "caption": "analog synths, gated drums, warm tape hiss",
        "cover_prompt": "a chrome car under violet neon",
        "vocal_style": "female airy vocal",
        "mood": "nostalgic",
        "description": f"Song number {index}.",
        "language": "English",
        "bpm": 110,
        "key_scale": "A minor",
        "time_signature": "4/4",
        "audio_duration": 200,
    }
    values.update(overrides)
    return SongMetadata(**values)


class FakeTextProvider:
    def __init__(self, results: list[Any] | None = None) -> None:
        self.results = list(results or [])
        self.calls: list[dict[str, Any]] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def generate(
        self,
        prompt: str,
        system: str,
        params: TextGenerationParams,
        *,
        provider: str,
        model: str,
    ) -> SongMetadata:
        self.calls.append(
            {"prompt": prompt, "system": system, "params": params, "provider": provider, "model": model}
        )
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if self.results else make_metadata(len(self.calls))
        if isinstance(result, Exception):
            raise result
        return result


_DEFAULT_COVER = CoverImage(b"\x89PNGcover")


class FakeImageProvider:
    def __init__(self, result: CoverImage | Exception | None = _DEFAULT_COVER) -> None:
        self.result = result
        self.calls: list[tuple[str, str, str | None]] = []

    async def generate(
        self, prompt: str, *, provider: str, model: str | None
    ) -> CoverImage | None:
        self.calls.append((prompt, provider, model))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeAudioProvider:
    def __init__(self) -> None:
        self.submitted: list[AudioSubmitRequest] = []
        self.polled: list[str] = []
        self.results: dict[str, AudioPollResult | Exception] = {}
        self.submit_error: Exception | None = None
        self.audio = b"ID3fake-mp3"

    async def submit(self, request: AudioSubmitRequest) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(request)
        return f"task-{len(self.submitted)}"

    async def poll(self, task_id: str) -> AudioPollResult:
        self.polled.append(task_id)
        result = self.results.get(task_id, AudioPollResult(AudioTaskStatus.RUNNING))
        if isinstance(result, Exception):
            raise result
        return result

    async def download(self, audio_path: str) -> bytes:
        return self.audio

    def audio_url(self, song_id: str, audio_path: str) -> str:
        return f"http://ace.test{audio_path}"


class FakeLibrary:
    def __init__(self, root: Path, *, error: Exception | None = None) -> None:
        self.root = root
        self.error = error
        self.saved: list[tuple[str, bytes, CoverImage | None]] = []

    async def save(
        self, song: SongRecord, audio: bytes, *, cover: CoverImage | None = None
    ) -> Path:
        if self.error is not None:
            raise self.error
        self.saved.append((song.id, audio, cover))
        target = self.root / song.id
        target.mkdir(parents=True, exist_ok=True)
        (target / "audio.mp3").write_bytes(audio)
        return target


class FakeTrimmer:
    def __init__(self) -> None:
        self.trimmed: list[Path] = []

    async def trim(self, audio_file: Path) -> TrimResult:
        self.trimmed.append(audio_file)
        return TrimResult(trimmed=False)


def make_deps(
    store: SqlStateStore,
    *,
    text: FakeTextProvider | None = None,
    image: FakeImageProvider | None = None,
    audio: FakeAudioProvider | None = None,
    library: FakeLibrary | None = None,
    trimmer: FakeTrimmer | None = None,
    provider_env: dict[str, str] | None = None,
    **config_overrides: Any,
) -> ProcessorDeps:
    config = replace(OrchestratorConfig.from_env({}), **config_overrides)
    return ProcessorDeps(
        store=store,
        text=text or FakeTextProvider(),
        image=image or FakeImageProvider(),
        audio=audio or FakeAudioProvider(),
        library=library,
        trimmer=trimmer,
        config=config,
        providers=ProviderConfig.from_env(provider_env or {}),
        rng=random.Random(7),
    )


async def create_session(
    store: SqlStateStore,
    *,
    mode: SessionMode = SessionMode.ENDLESS,
    **overrides: Any,
) -> SessionRecord:
    values: dict[str, Any] = {
        "name": "Night drive",
        "prompt": "dreamy synthwave for a night drive",
        "llm_provider": "ollama",
        "llm_model": "llama3",
        "mode": mode,
    }
    values.update(overrides)
    return await store.create_session(NewSession(**values))


async def song_in_status(
    store: SqlStateStore,
    session_id: str,
    status: SongStatus,
    *,
    order_index: float = 1.0,
    **columns: Any,
) -> SongRecord:
    """Insert a song and force it into ``status`` with raw column values."""

    song = await store.insert_pending_work_item(session_id, order_index)
    await set_columns(store, song.id, status=status.value, **columns)
    record = await store.get_song(song.id)
    assert record is not None
    return record


async def set_columns(store: SqlStateStore, song_id: str, **columns: Any) -> None:
    def _update(db: Any) -> None:
        db.execute(update(Song).where(Song.id == song_id).values(**columns))

    await store._run(_update)


def minutes_ago(minutes: float) -> datetime:
    """Naive UTC timestamp as stored by the SQLite backend."""

    return (now_utc() - timedelta(minutes=minutes)).replace(tzinfo=None)


async def statuses(store: SqlStateStore, session_id: str) -> list[str]:
    return [song.status.value for song in await store.list_songs(session_id)]
