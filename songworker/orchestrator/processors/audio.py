"""Audio stages: submit synthesis jobs, poll them and persist the results."""

from __future__ import annotations

import asyncio
from pathlib import Path
import time

from songworker.errors import OperationCancelled
from songworker.logging import get_logger
from songworker.orchestrator.events import emit_stage_event
from songworker.orchestrator.processors.base import ProcessorDeps, describe_error, elapsed_ms
from songworker.orchestrator.session_state import CancellationToken, SessionState
from songworker.orchestrator.status import SongStatus
from songworker.orchestrator.work_queue import WorkQueueSnapshot
from songworker.providers.base import AudioSubmitRequest, AudioTaskStatus, CoverImage
from songworker.providers.prompts import language_code
from songworker.providers.storage import AUDIO_FILENAME
from songworker.store.base import SessionRecord, SongRecord
from songworker.utils.time import seconds_since

logger = get_logger(__name__)

SUBMIT_STAGE = "submit"
POLL_STAGE = "poll"
SAVE_STAGE = "save"
AUDIO_PROVIDER = "ace-step"

DEFAULT_BPM = 120
DEFAULT_KEY_SCALE = "C major"
DEFAULT_TIME_SIGNATURE = "4/4"
DEFAULT_AUDIO_DURATION = 240


def build_submit_request(session: SessionRecord, song: SongRecord) -> AudioSubmitRequest:
    return AudioSubmitRequest(
        lyrics=song.lyrics or "",
        caption=song.caption or "",
        vocal_style=song.vocal_style,
        bpm=song.bpm or DEFAULT_BPM,
        key_scale=song.key_scale or DEFAULT_KEY_SCALE,
        time_signature=song.time_signature or DEFAULT_TIME_SIGNATURE,
        audio_duration=song.audio_duration or DEFAULT_AUDIO_DURATION,
        vocal_language=language_code(session.lyrics_language),
        ace_model=session.ace_model,
        inference_steps=session.inference_steps,
        lm_temperature=session.lm_temperature,
        lm_cfg_scale=session.lm_cfg_scale,
        infer_method=session.infer_method,
    )


async def process_submit(
    session: SessionRecord,
    snapshot: WorkQueueSnapshot,
    *,
    deps: ProcessorDeps,
    token: CancellationToken,
) -> str:
    """Submit the first metadata-ready song when the session has no audio job running."""

    if snapshot.generating_audio or snapshot.submitting or not snapshot.metadata_ready:
        return "idle"
    song = snapshot.metadata_ready[0]
    if not await deps.store.claim_for_audio(song.id):
        emit_stage_event(
            logger, stage=SUBMIT_STAGE, session_id=session.id, song_id=song.id, status="skipped"
        )
        return "skipped"

    started = time.perf_counter()
    try:
        task_id = await token.guard(
            deps.audio.submit(build_submit_request(session, song)),
            timeout_s=deps.audio_timeout_s,
            provider=AUDIO_PROVIDER,
        )
        token.raise_if_cancelled()
        stored = await deps.store.update_ace_task(song.id, task_id)
    except OperationCancelled:
        emit_stage_event(
            logger,
            stage=SUBMIT_STAGE,
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
            errored_at_status=SongStatus.SUBMITTING_TO_ACE.value,
            auto_retry_max=deps.config.auto_retry_max,
        )
        emit_stage_event(
            logger,
            stage=SUBMIT_STAGE,
            session_id=session.id,
            song_id=song.id,
            status="failed",
            duration_ms=elapsed_ms(started),
            error=message,
        )
        return "failed"

    status = "completed" if stored else "skipped"
    emit_stage_event(
        logger,
        stage=SUBMIT_STAGE,
        session_id=session.id,
        song_id=song.id,
        status=status,
        duration_ms=elapsed_ms(started),
        task_id=task_id,
    )
    return status


async def _persist_to_library(
    song: SongRecord, audio: bytes, *, deps: ProcessorDeps
) -> Path | None:
    if deps.library is None:
        return None
    try:
        directory = await deps.library.save(
            song, audio, cover=CoverImage.from_data_url(song.cover_url)
        )
    except OSError as exc:
        logger.warning("Library save failed for %s (continuing): %s", song.id, exc)
        return None
    if deps.trimmer is not None:
        await deps.trimmer.trim(directory / AUDIO_FILENAME)
    return directory


async def save_song(
    session: SessionRecord,
    song: SongRecord,
    audio_path: str,
    *,
    deps: ProcessorDeps,
    token: CancellationToken,
) -> str:
    """Download a finished synthesis result and mark the song ready."""

    token.raise_if_cancelled()
    if not await deps.store.claim_for_saving(song.id):
        return "skipped"

    started = time.perf_counter()
    try:
        audio = await token.guard(
            deps.audio.download(audio_path),
            timeout_s=deps.download_timeout_s,
            provider=AUDIO_PROVIDER,
        )
        directory = await _persist_to_library(song, audio, deps=deps)
        token.raise_if_cancelled()
        if directory is not None:
            await deps.store.update_storage_path(song.id, str(directory), audio_path)
        ready = await deps.store.mark_ready(song.id, deps.audio.audio_url(song.id, audio_path))
        if ready:
            await deps.store.increment_songs_generated(session.id)
    except OperationCancelled:
        emit_stage_event(
            logger,
            stage=SAVE_STAGE,
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
            errored_at_status=SongStatus.SAVING.value,
            auto_retry_max=deps.config.auto_retry_max,
        )
        emit_stage_event(
            logger,
            stage=SAVE_STAGE,
            session_id=session.id,
            song_id=song.id,
            status="failed",
            duration_ms=elapsed_ms(started),
            error=message,
        )
        return "failed"

    status = "completed" if ready else "skipped"
    emit_stage_event(
        logger,
        stage=SAVE_STAGE,
        session_id=session.id,
        song_id=song.id,
        status=status,
        duration_ms=elapsed_ms(started),
        storage_path=str(directory) if directory is not None else None,
    )
    return status


async def poll_song(
    session: SessionRecord,
    song: SongRecord,
    *,
    deps: ProcessorDeps,
    token: CancellationToken,
) -> str:
    if not song.ace_task_id:
        await deps.store.revert_to_metadata_ready(song.id)
        logger.warning("Song %s was generating audio without a task id; reverted", song.id)
        return "reverted"

    try:
        result = await token.guard(
            deps.audio.poll(song.ace_task_id),
            timeout_s=deps.audio_timeout_s,
            provider=AUDIO_PROVIDER,
        )
    except OperationCancelled:
        return "cancelled"
    except Exception as exc:
        logger.warning("Poll for %s failed; retrying next tick: %s", song.id, exc)
        return "poll_error"

    if token.cancelled:
        return "cancelled"

    if result.status is AudioTaskStatus.RUNNING:
        return "running"

    if result.status is AudioTaskStatus.NOT_FOUND:
        waited = seconds_since(song.ace_submitted_at)
        if waited is not None and waited < deps.config.not_found_grace_s:
            return "waiting"
        await deps.store.revert_to_metadata_ready(song.id)
        emit_stage_event(
            logger,
            stage=POLL_STAGE,
            session_id=session.id,
            song_id=song.id,
            status="reverted",
            task_id=song.ace_task_id,
        )
        return "reverted"

    if result.status is AudioTaskStatus.FAILED:
        message = result.error or "Audio generation failed"
        await deps.store.mark_error(
            song.id,
            message,
            errored_at_status=SongStatus.GENERATING_AUDIO.value,
            auto_retry_max=deps.config.auto_retry_max,
        )
        emit_stage_event(
            logger,
            stage=POLL_STAGE,
            session_id=session.id,
            song_id=song.id,
            status="failed",
            error=message,
            task_id=song.ace_task_id,
        )
        return "failed"

    if not result.audio_path:
        message = "Audio task succeeded without an audio path"
        await deps.store.mark_error(
            song.id,
            message,
            errored_at_status=SongStatus.GENERATING_AUDIO.value,
            auto_retry_max=deps.config.auto_retry_max,
        )
        return "failed"
    return await save_song(session, song, result.audio_path, deps=deps, token=token)


async def process_poll(
    session: SessionRecord,
    snapshot: WorkQueueSnapshot,
    *,
    deps: ProcessorDeps,
    state: SessionState,
) -> dict[str, str]:
    """Poll every generating song of the session concurrently."""

    songs = [song for song in snapshot.generating_audio if song.id not in state.active_polls]
    if not songs:
        return {}

    async def _tracked(song: SongRecord) -> str:
        state.active_polls.add(song.id)
        try:
            return await poll_song(session, song, deps=deps, token=state.token)
        finally:
            state.active_polls.discard(song.id)

    results = await asyncio.gather(
        *(_tracked(song) for song in songs), return_exceptions=True
    )
    outcomes: dict[str, str] = {}
    for song, result in zip(songs, results):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            logger.error("Poll handling failed for %s: %s", song.id, result)
            outcomes[song.id] = "error"
        else:
            outcomes[song.id] = result
    return outcomes


__all__ = [
    "build_submit_request",
    "poll_song",
    "process_poll",
    "process_submit",
    "save_song",
]
