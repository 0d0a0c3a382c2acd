"""Prompt construction and response parsing for song metadata generation."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from songworker.errors import ProviderError
from songworker.providers.base import PromptDistance, TextGenerationParams
from songworker.store.base import SongMetadata

SYSTEM_PROMPT = """You are a music producer. Given a music description, write the full \
details of one new song and answer with JSON that matches the provided schema.

Fields:
- title: an evocative song title
- artistName: a fictional artist or band name that suits the genre, never a real artist
- genre: the broad category (Rock, Electronic, Hip-Hop, Jazz, Pop, Metal, R&B, Country, Classical)
- subGenre: a specific sub-genre, different from the previous songs
- vocalStyle: gender, vocal quality and performance style, e.g. "female breathy intimate vocal"
- lyrics: full lyrics with section markers such as [Verse 1], [Chorus], [Bridge], [Outro]; \
at least two verses and a chorus
- caption: the sound for an audio model: style, two to four instruments, production texture \
and mood; no vocals, tempo, key or duration; at most 300 characters
- coverPrompt: artwork for the song's disc: one art style, a concrete scene taken from the \
lyrics, one surreal detail, the lighting and an exact colour palette; never any text or \
lettering; at most 600 characters
- mood: one dominant mood word
- description: one or two sentences a music journalist would write, at most 200 characters
- language: the language of the lyrics
- bpm: tempo that fits the genre
- keyScale: musical key, e.g. "A minor"
- timeSignature: usually "4/4"; "3/4" for waltzes, "6/8" for compound time
- audioDuration: length in seconds between 180 and 300

Every song feeds a continuous playlist, so vary artist names, sub-genres, moods, tempos, \
lyrical themes and visual styles from song to song."""

SONG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "artistName": {"type": "string"},
        "genre": {"type": "string"},
        "subGenre": {"type": "string"},
        "vocalStyle": {"type": "string"},
        "lyrics": {"type": "string"},
        "caption": {"type": "string"},
        "coverPrompt": {"type": "string"},
        "mood": {"type": "string"},
        "description": {"type": "string"},
        "language": {"type": "string"},
        "bpm": {"type": "number"},
        "keyScale": {"type": "string"},
        "timeSignature": {"type": "string"},
        "audioDuration": {"type": "number"},
    },
    "required": [
        "title",
        "artistName",
        "genre",
        "subGenre",
        "vocalStyle",
        "lyrics",
        "caption",
        "coverPrompt",
        "mood",
        "description",
        "language",
        "bpm",
        "keyScale",
        "timeSignature",
        "audioDuration",
    ],
    "additionalProperties": False,
}

DISTANCE_INSTRUCTIONS: Mapping[PromptDistance, str] = {
    PromptDistance.FAITHFUL: (
        "This is a specific request. Follow it exactly and stay inside the requested "
        "genre and mood."
    ),
    PromptDistance.CLOSE: (
        "Stay in the same genre family, era and vibe as the description, like a radio "
        "station that keeps on-brand, but write a clearly different song."
    ),
    PromptDistance.GENERAL: (
        "Treat the description as a playlist theme. Pick an adjacent genre or shift the "
        "mood, energy or era while keeping a thread back to the source vibe."
    ),
}

LANGUAGE_CODES: Mapping[str, str] = {
    "english": "en",
    "german": "de",
    "spanish": "es",
    "french": "fr",
    "korean": "ko",
    "japanese": "ja",
    "russian": "ru",
    "chinese": "zh",
}

MIN_TARGET_BPM = 60
MAX_TARGET_BPM = 220

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def language_code(language: str | None) -> str | None:
    """Map a lyrics language name to the code the audio model expects."""

    if not language:
        return None
    normalised = language.strip().lower()
    if not normalised or normalised == "auto":
        return None
    return LANGUAGE_CODES.get(normalised, normalised)


def build_system_prompt(params: TextGenerationParams) -> str:
    sections = [SYSTEM_PROMPT]
    language = (params.lyrics_language or "").strip()
    if language and language.lower() != "auto":
        sections.append(f"IMPORTANT: Write ALL lyrics in {language.capitalize()}.")
    if params.target_key:
        sections.append(f"Use the musical key: {params.target_key}.")
    if params.time_signature:
        sections.append(f"Use time signature: {params.time_signature}.")
    if params.audio_duration:
        sections.append(f"Target audio duration: {params.audio_duration} seconds.")
    return "\n\n".join(sections)


def build_user_prompt(prompt: str, params: TextGenerationParams) -> str:
    """Combine the steering prompt with distance and diversity guidance."""

    parts = [prompt.strip(), DISTANCE_INSTRUCTIONS[params.distance]]
    if params.recent_songs:
        lines = []
        for song in params.recent_songs:
            detail = ", ".join(
                value for value in (song.genre, song.sub_genre, song.mood) if value
            )
            suffix = f" ({detail})" if detail else ""
            lines.append(f'- "{song.title}" by {song.artist_name}{suffix}')
        parts.append(
            "Recently generated songs. Do not reuse these titles or artist names:\n"
            + "\n".join(lines)
        )
    if params.recent_descriptions:
        parts.append(
            "Recent song descriptions, pick a different angle:\n"
            + "\n".join(f"- {text}" for text in params.recent_descriptions)
        )
    return "\n\n".join(part for part in parts if part)


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_PATTERN.search(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def _optional_text(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(payload: Mapping[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def parse_song_metadata(
    text: str,
    *,
    provider: str,
    target_bpm: int | None = None,
) -> SongMetadata:
    """Decode the model's JSON answer into :class:`SongMetadata`."""

    try:
        payload = json.loads(strip_code_fences(text))
    except ValueError as exc:
        raise ProviderError(
            f"{provider} returned malformed song JSON",
            provider=provider,
        ) from exc
    if not isinstance(payload, Mapping):
        raise ProviderError(f"{provider} returned a non-object song payload", provider=provider)

    missing = [
        key
        for key in ("title", "artistName", "genre", "lyrics", "caption")
        if not _optional_text(payload, key)
    ]
    if missing:
        raise ProviderError(
            f"{provider} response is missing fields: {', '.join(missing)}",
            provider=provider,
        )

    bpm = _optional_int(payload, "bpm")
    if target_bpm is not None and MIN_TARGET_BPM <= target_bpm <= MAX_TARGET_BPM:
        bpm = target_bpm

    genre = _optional_text(payload, "genre") or ""
    return SongMetadata(
        title=_optional_text(payload, "title") or "",
        artist_name=_optional_text(payload, "artistName") or "",
        genre=genre,
        sub_genre=_optional_text(payload, "subGenre") or genre,
        lyrics=_optional_text(payload, "lyrics") or "",
        caption=_optional_text(payload, "caption") or "",
        cover_prompt=_optional_text(payload, "coverPrompt"),
        vocal_style=_optional_text(payload, "vocalStyle"),
        mood=_optional_text(payload, "mood"),
        description=_optional_text(payload, "description"),
        language=_optional_text(payload, "language"),
        bpm=bpm,
        key_scale=_optional_text(payload, "keyScale"),
        time_signature=_optional_text(payload, "timeSignature"),
        audio_duration=_optional_int(payload, "audioDuration"),
    )


__all__ = [
    "LANGUAGE_CODES",
    "SONG_SCHEMA",
    "SYSTEM_PROMPT",
    "build_system_prompt",
    "build_user_prompt",
    "language_code",
    "parse_song_metadata",
    "strip_code_fences",
]
