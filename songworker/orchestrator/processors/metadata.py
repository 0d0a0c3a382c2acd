"""Metadata stage: turn a pending song into a fully described one."""

from __future__ import annotations

from collections.abc import Sequence
import random
import time

from songworker.errors import OperationCancelled
from songworker.logging import get_logger
from songworker.orchestrator.events import emit_stage_event
from songworker.orchestrator.processors.base import ProcessorDeps, describe_error, elapsed_ms
from songworker.orchestrator.session_state import CancellationToken
from songworker.orchestrator.status import SongStatus
from songworker.orchestrator.work_queue import WorkQueueSnapshot
from songworker.providers.base import PromptDistance, RecentSong, TextGenerationParams
from songworker.providers.prompts import build_system_prompt
from songworker.store.base import SessionRecord, SongMetadata, SongRecord, WorkerSettings

logger = get_logger(__name__)

STAGE = "metadata"
CLOSE_DISTANCE_PROBABILITY = 0.6


def choose_distance(
    session: SessionRecord, song: SongRecord, rng: random.Random
) -> PromptDistance:
    if song.interrupt_prompt or session.is_oneshot:
        return PromptDistance.FAITHFUL
    if rng.random() < CLOSE_DISTANCE_PROBABILITY:
        return PromptDistance.CLOSE
    return PromptDistance.GENERAL


def is_duplicate(metadata: SongMetadata, recent: Sequence[RecentSong]) -> bool:
    """Whether ``metadata`` reuses the title or artist of a recent song."""

    title = metadata.title.strip().lower()
    artist = metadata.artist_name.strip().lower()
    for song in recent:
        if song.title.strip().lower() == title or song.artist_name.strip().lower() == artist:
            return True
    return False


def build_text_params(
    session: SessionRecord,
    song: SongRecord,
    snapshot: WorkQueueSnapshot,
    rng: random.Random,
) -> TextGenerationParams:
    recent = [
        RecentSong(
            title=item.title or "",
            artist_name=item.artist_name or "",
            genre=item.genre,
            sub_genre=item.sub_genre,
            vocal_style=item.vocal_style,
            mood=item.mood,
        )
        for item in snapshot.recent_completed
        if item.title
    ]
    return TextGenerationParams(
        lyrics_language=session.lyrics_language,
        target_bpm=session.target_bpm,
        target_key=session.target_key,
        time_signature=session.time_signature,
        audio_duration=session.audio_duration,
        distance=choose_distance(session, song, rng),
        recent_songs=recent,
        recent_descriptions=list(snapshot.recent_descriptions),
    )


def resolve_text_profile(
    session: SessionRecord, settings: WorkerSettings
) -> tuple[str, str]:
    provider = settings.text_provider or session.llm_provider
    model = settings.text_model or session.llm_model
    return provider, model


async def process_metadata(
    session: SessionRecord,
    snapshot: WorkQueueSnapshot,
    *,
    deps: ProcessorDeps,
    token: CancellationToken,
    settings: WorkerSettings,
) -> str:
    """Claim the first pending song and generate its metadata.

    Returns the outcome recorded for the run: ``idle`` when nothing is
    pending, ``skipped`` when the claim was lost, ``cancelled``, ``failed``
    or ``completed``.
    """

    if not snapshot.pending:
        return "idle"
    song = snapshot.pending[0]
    if not await deps.store.claim_for_metadata(song.id):
        emit_stage_event(
            logger, stage=STAGE, session_id=session.id, song_id=song.id, status="skipped"
        )
        return "skipped"

    started = time.perf_counter()
    provider, model = resolve_text_profile(session, settings)
    prompt = song.interrupt_prompt or session.prompt
    params = build_text_params(session, song, snapshot, deps.rng)
    system = build_system_prompt(params)

    async def _generate() -> SongMetadata:
        return await token.guard(
            deps.text.generate(prompt, system, params, provider=provider, model=model),
            timeout_s=deps.text_timeout_s,
            provider=provider,
        )

    try:
        metadata = await _generate()
        if is_duplicate(metadata, params.recent_songs):
            logger.info("Duplicate title or artist for %s (%s); regenerating", song.id, metadata.title)
            metadata = await _generate()
            if is_duplicate(metadata, params.recent_songs):
                logger.warning("Still duplicate after retry for %s; accepting", song.id)
        token.raise_if_cancelled()
        completed = await deps.store.complete_metadata(
            song.id, metadata, llm_provider=provider, llm_model=model
        )
    except OperationCancelled:
        emit_stage_event(
            logger,
            stage=STAGE,
            session_id=session.id,
            song_id=song.id,
            status="cancelled",
            duration_ms=elapsed_ms(started),
        )
        return "cancelled"
    except Exception as exc:
        if token.cancelled:
            return "cancelled"
        message = describe_error(exc)
        await deps.store.mark_error(
            song.id,
            message,
            errored_at_status=SongStatus.GENERATING_METADATA.value,
            auto_retry_max=deps.config.auto_retry_max,
        )
        emit_stage_event(
            logger,
            stage=STAGE,
            session_id=session.id,
            song_id=song.id,
            status="failed",
            duration_ms=elapsed_ms(started),
            error=message,
            provider=provider,
        )
        return "failed"

    status = "completed" if completed else "skipped"
    emit_stage_event(
        logger,
        stage=STAGE,
        session_id=session.id,
        song_id=song.id,
        status=status,
        duration_ms=elapsed_ms(started),
        provider=provider,
        model=model,
        title=metadata.title,
    )
    return status


__all__ = [
    "build_text_params",
    "choose_distance",
    "is_duplicate",
    "process_metadata",
    "resolve_text_profile",
]
