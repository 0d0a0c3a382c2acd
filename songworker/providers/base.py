"""Contracts and value types for the external generation providers."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from songworker.store.base import SongMetadata, SongRecord


class PromptDistance(str, Enum):
    """How far a generated song may wander from the steering prompt."""

    FAITHFUL = "faithful"
    CLOSE = "close"
    GENERAL = "general"


@dataclass(slots=True)
class RecentSong:
    title: str
    artist_name: str
    genre: str | None = None
    sub_genre: str | None = None
    vocal_style: str | None = None
    mood: str | None = None


@dataclass(slots=True)
class TextGenerationParams:
    lyrics_language: str | None = None
    target_bpm: int | None = None
    target_key: str | None = None
    time_signature: str | None = None
    audio_duration: int | None = None
    distance: PromptDistance = PromptDistance.FAITHFUL
    recent_songs: list[RecentSong] = field(default_factory=list)
    recent_descriptions: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class CoverImage:
    data: bytes
    mime_type: str = "image/png"

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    @classmethod
    def from_data_url(cls, value: str | None) -> CoverImage | None:
        if not value or not value.startswith("data:"):
            return None
        header, sep, payload = value.partition(",")
        if not sep or ";base64" not in header:
            return None
        mime_type = header[len("data:") :].split(";", 1)[0] or "image/png"
        try:
            return cls(data=base64.b64decode(payload, validate=True), mime_type=mime_type)
        except ValueError:
            return None


@dataclass(slots=True)
class AudioSubmitRequest:
    lyrics: str
    caption: str
    bpm: int
    key_scale: str
    time_signature: str
    audio_duration: int
    vocal_style: str | None = None
    vocal_language: str | None = None
    ace_model: str | None = None
    inference_steps: int | None = None
    lm_temperature: float | None = None
    lm_cfg_scale: float | None = None
    infer_method: str | None = None


class AudioTaskStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass(slots=True, frozen=True)
class AudioPollResult:
    status: AudioTaskStatus
    audio_path: str | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class TrimResult:
    trimmed: bool
    original_duration: float = 0.0
    trimmed_duration: float = 0.0


class TextGenerationProvider(Protocol):
    async def generate(
        self,
        prompt: str,
        system: str,
        params: TextGenerationParams,
        *,
        provider: str,
        model: str,
    ) -> SongMetadata: ...


class ImageGenerationProvider(Protocol):
    async def generate(
        self, prompt: str, *, provider: str, model: str | None
    ) -> CoverImage | None: ...


class AudioSynthesisProvider(Protocol):
    async def submit(self, request: AudioSubmitRequest) -> str: ...

    async def poll(self, task_id: str) -> AudioPollResult: ...

    async def download(self, audio_path: str) -> bytes: ...

    def audio_url(self, song_id: str, audio_path: str) -> str: ...


class SongLibraryWriter(Protocol):
    async def save(
        self, song: SongRecord, audio: bytes, *, cover: CoverImage | None = None
    ) -> Path: ...


class SilenceTrimmer(Protocol):
    async def trim(self, audio_file: Path) -> TrimResult: ...


__all__ = [
    "AudioPollResult",
    "AudioSubmitRequest",
    "AudioSynthesisProvider",
    "AudioTaskStatus",
    "CoverImage",
    "ImageGenerationProvider",
    "PromptDistance",
    "RecentSong",
    "SilenceTrimmer",
    "SongLibraryWriter",
    "TextGenerationParams",
    "TextGenerationProvider",
    "TrimResult",
]
