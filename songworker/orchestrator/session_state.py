"""Per-session concurrency state owned by the scheduler."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterator
import contextlib
from dataclasses import dataclass, field
from enum import Enum
import inspect
from typing import Any, TypeVar

from songworker.errors import OperationCancelled, ProviderTimeoutError

T = TypeVar("T")


class Stage(str, Enum):
    """Stages guarded by a per-session busy flag."""

    METADATA = "metadata"
    COVER = "cover"
    SUBMIT = "submit"
    POLL = "poll"


class CancellationToken:
    """Signalled once when the owning session stops being serviced."""

    __slots__ = ("session_id", "_event")

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.session_id)

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(
        self,
        awaitable: Awaitable[T],
        *,
        timeout_s: float | None = None,
        provider: str = "provider",
    ) -> T:
        """Await ``awaitable`` unless the token fires or ``timeout_s`` elapses first.

        Cancellation raises :class:`OperationCancelled`; a timeout raises
        :class:`ProviderTimeoutError`. In both cases the call is cancelled.
        """

        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled(self.session_id)
        call = asyncio.ensure_future(awaitable)
        watcher = asyncio.create_task(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {call, watcher},
                timeout=timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if call in done:
                return call.result()
            if watcher in done:
                raise OperationCancelled(self.session_id)
            raise ProviderTimeoutError(provider, int((timeout_s or 0) * 1000))
        finally:
            for task in (call, watcher):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError, Exception):
                        await task


@dataclass(slots=True)
class SessionState:
    session_id: str
    token: CancellationToken
    metadata_busy: bool = False
    cover_busy: bool = False
    submit_busy: bool = False
    poll_busy: bool = False
    active_polls: set[str] = field(default_factory=set)

    def is_busy(self, stage: Stage) -> bool:
        return bool(getattr(self, f"{stage.value}_busy"))

    def set_busy(self, stage: Stage, value: bool) -> None:
        setattr(self, f"{stage.value}_busy", value)

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "cancelled": self.token.cancelled,
            "busy": {stage.value: self.is_busy(stage) for stage in Stage},
            "active_polls": sorted(self.active_polls),
        }


class SchedulerState:
    """Registry of :class:`SessionState` records, one per serviced session."""

    def __init__(self) -> None:
        self._sessions: dict[str, SessionState] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[SessionState]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> SessionState | None:
        return self._sessions.get(session_id)

    def ensure(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            state = SessionState(session_id=session_id, token=CancellationToken(session_id))
            self._sessions[session_id] = state
        return state

    def discard(self, session_id: str) -> SessionState | None:
        """Cancel and forget ``session_id``; returns the dropped state."""

        state = self._sessions.pop(session_id, None)
        if state is not None:
            state.token.cancel()
        return state

    def tracked_ids(self) -> set[str]:
        return set(self._sessions)

    def cancel_all(self) -> None:
        for state in self._sessions.values():
            state.token.cancel()


__all__ = [
    "CancellationToken",
    "SchedulerState",
    "SessionState",
    "Stage",
]
