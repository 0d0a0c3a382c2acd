"""Cover stage: render disc artwork for songs that carry a cover prompt."""

from __future__ import annotations

import time

from songworker.errors import OperationCancelled
from songworker.logging import get_logger
from songworker.orchestrator.events import emit_stage_event
from songworker.orchestrator.processors.base import ProcessorDeps, describe_error, elapsed_ms
from songworker.orchestrator.session_state import CancellationToken
from songworker.orchestrator.status import SongStatus, is_valid_song_transition
from songworker.orchestrator.work_queue import WorkQueueSnapshot
from songworker.store.base import SessionRecord, SongRecord, WorkerSettings

logger = get_logger(__name__)

STAGE = "cover"

_KEEP_STATUS_ON_FAILURE = frozenset({SongStatus.READY, SongStatus.PLAYED})


async def _record_failure(
    song: SongRecord, message: str, *, deps: ProcessorDeps
) -> None:
    await deps.store.fail_cover(song.id)
    if song.status in _KEEP_STATUS_ON_FAILURE:
        return
    if not is_valid_song_transition(song.status, SongStatus.ERROR):
        return
    await deps.store.mark_error(
        song.id,
        message,
        errored_at_status=song.status.value,
        auto_retry_max=deps.config.auto_retry_max,
    )


async def process_cover(
    session: SessionRecord,
    snapshot: WorkQueueSnapshot,
    *,
    deps: ProcessorDeps,
    token: CancellationToken,
    settings: WorkerSettings,
) -> str:
    if not settings.image_provider or not snapshot.needs_cover:
        return "idle"
    song = snapshot.needs_cover[0]
    if not song.cover_prompt:
        return "idle"
    if not await deps.store.claim_for_cover(song.id):
        emit_stage_event(
            logger, stage=STAGE, session_id=session.id, song_id=song.id, status="skipped"
        )
        return "skipped"

    started = time.perf_counter()
    provider = settings.image_provider
    try:
        image = await token.guard(
            deps.image.generate(
                song.cover_prompt, provider=provider, model=settings.image_model
            ),
            timeout_s=deps.image_timeout_s,
            provider=provider,
        )
        if image is None:
            raise ValueError(f"No cover generated by {provider}")
        token.raise_if_cancelled()
        stored = await deps.store.complete_cover(song.id, image.to_data_url())
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
        await _record_failure(song, message, deps=deps)
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

    status = "completed" if stored else "skipped"
    emit_stage_event(
        logger,
        stage=STAGE,
        session_id=session.id,
        song_id=song.id,
        status=status,
        duration_ms=elapsed_ms(started),
        provider=provider,
    )
    return status


__all__ = ["process_cover"]
