"""Tick loop that dispatches stage processors for every serviced session."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import contextlib
from dataclasses import asdict, dataclass
from datetime import datetime
import logging
import time
from typing import Any

from songworker.logging import get_logger
from songworker.logging_events import log_event
from songworker.orchestrator import events as orchestrator_events
from songworker.orchestrator.processors import (
    ProcessorDeps,
    process_cover,
    process_metadata,
    process_poll,
    process_queue,
    process_retries,
    process_stale,
    process_submit,
)
from songworker.orchestrator.session_state import SchedulerState, SessionState, Stage
from songworker.orchestrator.status import SessionStatus
from songworker.orchestrator.work_queue import WorkQueueSnapshot
from songworker.store.base import SessionRecord, WorkerSettings
from songworker.utils.time import now_utc


@dataclass(slots=True)
class TickSummary:
    status: str
    sessions: int = 0
    dispatched: int = 0
    failed_sessions: int = 0
    duration_ms: int = 0
    finished_at: datetime | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["finished_at"] = orchestrator_events.format_datetime(self.finished_at)
        return payload


class Scheduler:
    """Service every active or closing session once per tick.

    Stage processors run as independent tasks. A per-session busy flag keeps
    each stage single-flight; the flag is cleared when the task settles.
    """

    def __init__(self, deps: ProcessorDeps, *, tick_interval_ms: int | None = None) -> None:
        self._deps = deps
        self._store = deps.store
        interval_ms = (
            tick_interval_ms if tick_interval_ms is not None else deps.config.tick_interval_ms
        )
        self._tick_interval = max(0.0, interval_ms / 1000.0)
        self._state = SchedulerState()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = get_logger(__name__)
        self._stop_signal: asyncio.Event | None = None
        self._pending_stop = False
        self.started: asyncio.Event = asyncio.Event()
        self.stopped: asyncio.Event = asyncio.Event()
        self.stop_requested: bool = False
        self.ticks: int = 0
        self.last_tick: TickSummary | None = None
        self.started_at: datetime | None = None

    @property
    def tick_interval(self) -> float:
        return self._tick_interval

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def request_stop(self) -> None:
        self.stop_requested = True
        if self._stop_signal is not None:
            self._stop_signal.set()
        else:
            self._pending_stop = True

    async def run(self, lifespan: asyncio.Event | None = None) -> None:
        """Run the tick loop until a stop or lifespan signal triggers."""

        self._prepare_run_state()
        try:
            self.started.set()
            while not self._should_stop(lifespan):
                await self.tick()
                await self._sleep(lifespan)
        finally:
            if self._stop_signal is not None:
                self._stop_signal.set()
            if not self.stop_requested:
                self.stop_requested = True
            self.stopped.set()

    async def stop(self, *, grace_s: float | None = None) -> None:
        """Stop the loop, cancel every session and wait for stage tasks."""

        self.request_stop()
        self._state.cancel_all()
        timeout = (
            grace_s if grace_s is not None else self._deps.config.shutdown_grace_ms / 1000.0
        )
        tasks = list(self._tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self._logger.warning("Cancelled %d stage task(s) at shutdown", len(pending))

    async def drain(self) -> None:
        """Wait until every dispatched stage task has settled."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _prepare_run_state(self) -> None:
        self.started.clear()
        self.stopped.clear()
        self._stop_signal = asyncio.Event()
        self.started_at = now_utc()
        if self._pending_stop:
            self.stop_requested = True
            self._stop_signal.set()
            self._pending_stop = False
        else:
            self.stop_requested = False

    def _should_stop(self, lifespan: asyncio.Event | None) -> bool:
        if self._stop_signal is not None and self._stop_signal.is_set():
            return True
        if lifespan is not None and lifespan.is_set():
            return True
        return False

    async def tick(self) -> TickSummary:
        """Run one scheduling pass. Never raises."""

        started = time.perf_counter()
        summary = TickSummary(status="ok")
        try:
            await self._tick(summary)
        except Exception as exc:
            summary.status = "error"
            summary.error = str(exc) or exc.__class__.__name__
            self._logger.exception("Scheduler tick failed")
        summary.duration_ms = int((time.perf_counter() - started) * 1000)
        summary.finished_at = now_utc()
        self.ticks += 1
        self.last_tick = summary
        orchestrator_events.emit_tick_event(
            self._logger,
            status=summary.status,
            duration_ms=summary.duration_ms,
            sessions=summary.sessions,
            dispatched=summary.dispatched,
            failed_sessions=summary.failed_sessions,
            error=summary.error,
        )
        return summary

    async def _tick(self, summary: TickSummary) -> None:
        sessions = await self._store.list_serviced_sessions()
        summary.sessions = len(sessions)
        await self._reconcile({session.id for session in sessions})
        if not sessions:
            summary.status = "idle"
            return

        settings = await self._store.get_settings()
        for session in sessions:
            try:
                summary.dispatched += await self._service_session(session, settings)
            except Exception as exc:
                summary.failed_sessions += 1
                log_event(
                    self._logger,
                    "orchestrator.session_error",
                    level=logging.ERROR,
                    session_id=session.id,
                    error=str(exc) or exc.__class__.__name__,
                )

    async def _reconcile(self, serviced: set[str]) -> None:
        for session_id in self._state.tracked_ids() - serviced:
            self._state.discard(session_id)
            orchestrator_events.emit_session_event(
                self._logger,
                session_id=session_id,
                status="released",
                reason="no_longer_serviced",
            )
            try:
                reverted = await self._store.revert_transient_statuses(session_id)
            except Exception as exc:
                self._logger.warning(
                    "Reverting transient songs for %s failed: %s", session_id, exc
                )
                continue
            if reverted:
                self._logger.info("Reverted %d in-flight song(s) for %s", reverted, session_id)

    async def _service_session(self, session: SessionRecord, settings: WorkerSettings) -> int:
        state = self._state.ensure(session.id)
        # Sampled before the snapshot read: a stage that settles during the
        # read stays idle until the next tick.
        busy = {stage: state.is_busy(stage) for stage in Stage}

        snapshot = await self._store.get_work_queue_snapshot(session.id)
        if snapshot.stale:
            if await process_stale(session, snapshot, store=self._store):
                snapshot = await self._store.get_work_queue_snapshot(session.id)

        if await self._advance_lifecycle(session, snapshot):
            return 0

        await process_retries(session, snapshot, store=self._store)
        await process_queue(
            session,
            snapshot,
            store=self._store,
            buffer_target=self._deps.config.buffer_target,
        )
        return self._dispatch(session, snapshot, state, settings, busy)

    async def _advance_lifecycle(
        self, session: SessionRecord, snapshot: WorkQueueSnapshot
    ) -> bool:
        """Apply session status changes; ``True`` ends servicing for this tick."""

        if session.status is SessionStatus.CLOSING and snapshot.transient_count == 0:
            if await self._store.update_session_status(session.id, SessionStatus.CLOSED):
                self._state.discard(session.id)
                orchestrator_events.emit_session_event(
                    self._logger,
                    session_id=session.id,
                    status=SessionStatus.CLOSED.value,
                    previous=SessionStatus.CLOSING.value,
                )
            return True

        if (
            session.status is SessionStatus.ACTIVE
            and session.is_oneshot
            and snapshot.total_songs > 0
            and snapshot.transient_count == 0
        ):
            if await self._store.update_session_status(session.id, SessionStatus.CLOSING):
                orchestrator_events.emit_session_event(
                    self._logger,
                    session_id=session.id,
                    status=SessionStatus.CLOSING.value,
                    previous=SessionStatus.ACTIVE.value,
                    reason="oneshot_complete",
                )
            return True
        return False

    def _dispatch(
        self,
        session: SessionRecord,
        snapshot: WorkQueueSnapshot,
        state: SessionState,
        settings: WorkerSettings,
        busy: dict[Stage, bool],
    ) -> int:
        deps = self._deps
        token = state.token
        dispatched = 0

        if snapshot.pending and not busy[Stage.METADATA] and not state.metadata_busy:
            self._spawn(
                state,
                Stage.METADATA,
                lambda: process_metadata(
                    session, snapshot, deps=deps, token=token, settings=settings
                ),
            )
            dispatched += 1

        if (
            settings.image_provider
            and snapshot.needs_cover
            and not busy[Stage.COVER]
            and not state.cover_busy
        ):
            self._spawn(
                state,
                Stage.COVER,
                lambda: process_cover(
                    session, snapshot, deps=deps, token=token, settings=settings
                ),
            )
            dispatched += 1

        if (
            snapshot.metadata_ready
            and not snapshot.generating_audio
            and not snapshot.submitting
            and not busy[Stage.SUBMIT]
            and not state.submit_busy
        ):
            self._spawn(
                state,
                Stage.SUBMIT,
                lambda: process_submit(session, snapshot, deps=deps, token=token),
            )
            dispatched += 1

        if snapshot.generating_audio and not busy[Stage.POLL] and not state.poll_busy:
            self._spawn(
                state,
                Stage.POLL,
                lambda: process_poll(session, snapshot, deps=deps, state=state),
            )
            dispatched += 1

        return dispatched

    def _spawn(
        self,
        state: SessionState,
        stage: Stage,
        factory: Callable[[], Awaitable[Any]],
    ) -> None:
        state.set_busy(stage, True)

        async def _runner() -> None:
            try:
                await factory()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception(
                    "Stage %s crashed for session %s", stage.value, state.session_id
                )
            finally:
                state.set_busy(stage, False)

        task = asyncio.create_task(
            _runner(), name=f"songworker-{stage.value}-{state.session_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _sleep(self, lifespan: asyncio.Event | None) -> None:
        timeout = self._tick_interval
        if timeout <= 0:
            await asyncio.sleep(0)
            return

        waiters: list[asyncio.Task[Any]] = []
        if lifespan is not None:
            waiters.append(asyncio.create_task(lifespan.wait()))
        if self._stop_signal is not None:
            waiters.append(asyncio.create_task(self._stop_signal.wait()))
        try:
            if waiters:
                done, pending = await asyncio.wait(
                    waiters,
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    with contextlib.suppress(asyncio.CancelledError):
                        task.result()
                for task in pending:
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            else:
                await asyncio.sleep(timeout)
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

    def status_snapshot(self) -> dict[str, Any]:
        """Return a JSON friendly view of the scheduler for the status API."""

        return {
            "running": self.started.is_set() and not self.stopped.is_set(),
            "started_at": orchestrator_events.format_datetime(self.started_at),
            "tick_interval_ms": int(self._tick_interval * 1000),
            "ticks": self.ticks,
            "in_flight_tasks": len(self._tasks),
            "last_tick": self.last_tick.as_dict() if self.last_tick is not None else None,
            "sessions": [state.as_dict() for state in self._state],
        }

    def session_status(self, session_id: str) -> dict[str, Any] | None:
        state = self._state.get(session_id)
        return state.as_dict() if state is not None else None


__all__ = ["Scheduler", "TickSummary"]
