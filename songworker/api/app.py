"""FastAPI application exposing worker health, status and metrics."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from songworker.api.schemas import (
    HealthResponse,
    RecoveryResponse,
    SessionDetailResponse,
    SessionStateResponse,
    WorkerStatusResponse,
)
from songworker.errors import ErrorCode, NotFoundError, SongworkerError
from songworker.logging import get_logger
from songworker.orchestrator.bootstrap import WorkerRuntime
from songworker.utils import metrics
from songworker.utils.time import seconds_since

_logger = get_logger(__name__)

_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.STATE_STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_runtime(request: Request) -> WorkerRuntime:
    return request.app.state.runtime


async def _handle_worker_error(request: Request, exc: SongworkerError) -> JSONResponse:
    status_code = _STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=status_code, content=exc.to_payload())


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    _logger.exception("Unhandled API error on %s", request.url.path, exc_info=exc)
    error = SongworkerError("Internal server error.", code=ErrorCode.INTERNAL_ERROR)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error.to_payload()
    )


def create_app(runtime: WorkerRuntime, *, start_worker: bool = True) -> FastAPI:
    """Build the status API; with ``start_worker`` the lifespan runs the scheduler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        stop_event = asyncio.Event()
        task: asyncio.Task[None] | None = None
        if start_worker:
            await runtime.recover()
            task = asyncio.create_task(runtime.scheduler.run(stop_event))
        try:
            yield
        finally:
            if task is not None:
                runtime.scheduler.request_stop()
                stop_event.set()
                await asyncio.gather(task, return_exceptions=True)
                await runtime.scheduler.stop()
                await runtime.aclose()

    app = FastAPI(title="songworker", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_exception_handler(SongworkerError, _handle_worker_error)
    app.add_exception_handler(Exception, _handle_unexpected_error)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(ok=True)

    @app.get("/api/worker/status", response_model=WorkerStatusResponse)
    async def worker_status(
        worker: WorkerRuntime = Depends(get_runtime),
    ) -> WorkerStatusResponse:
        snapshot = worker.scheduler.status_snapshot()
        started_at = worker.scheduler.started_at
        uptime = seconds_since(started_at) if snapshot["running"] else None
        recovery = (
            RecoveryResponse(**asdict(worker.recovery)) if worker.recovery is not None else None
        )
        return WorkerStatusResponse(**snapshot, uptime_s=uptime, recovery=recovery)

    @app.get("/api/worker/sessions/{session_id}", response_model=SessionDetailResponse)
    async def session_detail(
        session_id: str,
        worker: WorkerRuntime = Depends(get_runtime),
    ) -> SessionDetailResponse:
        session = await worker.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found.")
        state = worker.scheduler.session_status(session_id)
        return SessionDetailResponse(
            id=session.id,
            name=session.name,
            status=session.status.value,
            mode=session.mode.value,
            songs_generated=session.songs_generated,
            created_at=session.created_at,
            tracked=state is not None,
            state=SessionStateResponse(**state) if state is not None else None,
        )

    @app.get("/metrics")
    async def get_metrics() -> Response:
        payload = generate_latest(metrics.get_registry())
        headers = {"Cache-Control": "no-store"}
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST, headers=headers)

    return app


__all__ = ["create_app", "get_runtime"]
