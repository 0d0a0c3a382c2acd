"""Music library writer: one folder per finished song."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import json
import os
from pathlib import Path
import re
from typing import Any

from songworker.logging import get_logger
from songworker.providers.base import CoverImage
from songworker.store.base import SongRecord
from songworker.utils.time import now_utc

logger = get_logger(__name__)

AUDIO_FILENAME = "audio.mp3"
COVER_FILENAME = "cover.png"
LYRICS_FILENAME = "lyrics.txt"
GENERATION_LOG_FILENAME = "generation.json"
BY_ID_DIRNAME = ".by-id"

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")


def sanitize_component(value: str | None, *, fallback: str = "Unknown") -> str:
    cleaned = _WHITESPACE.sub(" ", _UNSAFE_CHARS.sub("_", value or "")).strip()
    if cleaned in {"", ".", ".."}:
        return fallback
    return cleaned


def song_directory(root: Path, song: SongRecord) -> Path:
    """Return ``root/genre/sub-genre/"artist - title"`` for ``song``."""

    genre = sanitize_component(song.genre)
    sub_genre = sanitize_component(song.sub_genre or song.genre)
    folder = sanitize_component(
        f"{song.artist_name or 'Unknown'} - {song.title or 'Unknown'}"
    )
    return root / genre / sub_genre / folder


def _generation_log(song: SongRecord) -> dict[str, Any]:
    payload = {
        key: value
        for key, value in asdict(song).items()
        if key
        in {
            "id",
            "session_id",
            "title",
            "artist_name",
            "genre",
            "sub_genre",
            "caption",
            "vocal_style",
            "cover_prompt",
            "mood",
            "description",
            "language",
            "bpm",
            "key_scale",
            "time_signature",
            "audio_duration",
            "ace_task_id",
            "llm_provider",
            "llm_model",
        }
    }
    payload["generated_at"] = now_utc().isoformat()
    return payload


@dataclass(slots=True)
class SongLibrary:
    root: Path

    async def save(
        self, song: SongRecord, audio: bytes, *, cover: CoverImage | None = None
    ) -> Path:
        return await asyncio.to_thread(self._save_sync, song, audio, cover)

    def _save_sync(self, song: SongRecord, audio: bytes, cover: CoverImage | None) -> Path:
        target = song_directory(self.root, song)
        target.mkdir(parents=True, exist_ok=True)

        (target / AUDIO_FILENAME).write_bytes(audio)
        (target / LYRICS_FILENAME).write_text(song.lyrics or "", encoding="utf-8")
        (target / GENERATION_LOG_FILENAME).write_text(
            json.dumps(_generation_log(song), indent=2, default=str),
            encoding="utf-8",
        )
        if cover is not None:
            (target / COVER_FILENAME).write_bytes(cover.data)

        self._link_by_id(song.id, target)
        return target

    def _link_by_id(self, song_id: str, target: Path) -> None:
        by_id = self.root / BY_ID_DIRNAME
        by_id.mkdir(parents=True, exist_ok=True)
        link = by_id / sanitize_component(song_id)
        if link.is_symlink() or link.exists():
            link.unlink()
        try:
            os.symlink(target, link, target_is_directory=True)
        except OSError:
            logger.debug("Symlinks unavailable; writing path file for %s", song_id)
            link.write_text(str(target), encoding="utf-8")


__all__ = [
    "AUDIO_FILENAME",
    "COVER_FILENAME",
    "GENERATION_LOG_FILENAME",
    "LYRICS_FILENAME",
    "SongLibrary",
    "sanitize_component",
    "song_directory",
]
