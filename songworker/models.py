"""Database models for the song worker."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from songworker.db import Base


def _utcnow() -> datetime:
    """Return a naive UTC timestamp for ORM defaults."""

    return datetime.now(UTC).replace(tzinfo=None)


class Session(Base):
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    prompt = Column(Text, nullable=False)
    llm_provider = Column(String(64), nullable=False, default="ollama")
    llm_model = Column(String(255), nullable=False, default="")
    mode = Column(String(16), nullable=False, default="endless")
    status = Column(String(16), nullable=False, default="active", index=True)
    target_bpm = Column(Integer, nullable=True)
    target_key = Column(String(32), nullable=True)
    time_signature = Column(String(16), nullable=True)
    audio_duration = Column(Integer, nullable=True)
    lyrics_language = Column(String(32), nullable=True)
    inference_steps = Column(Integer, nullable=True)
    lm_temperature = Column(Float, nullable=True)
    lm_cfg_scale = Column(Float, nullable=True)
    infer_method = Column(String(32), nullable=True)
    ace_model = Column(String(255), nullable=True)
    songs_generated = Column(Integer, nullable=False, default=0)
    current_order_index = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class Song(Base):
    __tablename__ = "songs"
    __table_args__ = (Index("ix_songs_session_status", "session_id", "status"),)

    id = Column(String(36), primary_key=True)
    session_id = Column(
        String(36),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_index = Column(Float, nullable=False)
    status = Column(String(32), nullable=False, default="pending")
    title = Column(String(512), nullable=True)
    artist_name = Column(String(512), nullable=True)
    genre = Column(String(128), nullable=True)
    sub_genre = Column(String(128), nullable=True)
    lyrics = Column(Text, nullable=True)
    caption = Column(Text, nullable=True)
    vocal_style = Column(String(512), nullable=True)
    mood = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)
    cover_prompt = Column(Text, nullable=True)
    cover_url = Column(Text, nullable=True)
    cover_status = Column(String(16), nullable=True)
    bpm = Column(Integer, nullable=True)
    key_scale = Column(String(32), nullable=True)
    time_signature = Column(String(16), nullable=True)
    audio_duration = Column(Integer, nullable=True)
    language = Column(String(64), nullable=True)
    llm_provider = Column(String(64), nullable=True)
    llm_model = Column(String(255), nullable=True)
    ace_task_id = Column(String(128), nullable=True)
    ace_submitted_at = Column(DateTime, nullable=True)
    ace_audio_path = Column(Text, nullable=True)
    audio_url = Column(Text, nullable=True)
    storage_path = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    errored_at_status = Column(String(32), nullable=True)
    is_interrupt = Column(Boolean, nullable=False, default=False)
    interrupt_prompt = Column(Text, nullable=True)
    generation_started_at = Column(DateTime, nullable=True)
    generation_completed_at = Column(DateTime, nullable=True)
    status_changed_at = Column(DateTime, nullable=False, default=_utcnow)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)
