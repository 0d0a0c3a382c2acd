"""Pydantic schemas for the worker status API."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool = True


class TickSummaryResponse(BaseModel):
    status: str
    sessions: int
    dispatched: int
    failed_sessions: int
    duration_ms: int
    finished_at: Optional[str] = None
    error: Optional[str] = None


class SessionStateResponse(BaseModel):
    session_id: str
    cancelled: bool
    busy: Dict[str, bool] = Field(default_factory=dict)
    active_polls: List[str] = Field(default_factory=list)


class RecoveryResponse(BaseModel):
    sessions: int
    recovered: int
    failed_sessions: List[str] = Field(default_factory=list)


class WorkerStatusResponse(BaseModel):
    running: bool
    started_at: Optional[str] = None
    uptime_s: Optional[float] = None
    tick_interval_ms: int
    ticks: int
    in_flight_tasks: int
    last_tick: Optional[TickSummaryResponse] = None
    recovery: Optional[RecoveryResponse] = None
    sessions: List[SessionStateResponse] = Field(default_factory=list)


class SessionDetailResponse(BaseModel):
    id: str
    name: str
    status: str
    mode: str
    songs_generated: int
    created_at: Optional[datetime] = None
    tracked: bool
    state: Optional[SessionStateResponse] = None


__all__ = [
    "HealthResponse",
    "RecoveryResponse",
    "SessionDetailResponse",
    "SessionStateResponse",
    "TickSummaryResponse",
    "WorkerStatusResponse",
]
