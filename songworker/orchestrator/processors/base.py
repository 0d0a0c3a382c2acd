"""Shared dependencies and helpers for the stage processors."""

from __future__ import annotations

from dataclasses import dataclass, field
import random
import time

from songworker.config import OrchestratorConfig, ProviderConfig
from songworker.providers.base import (
    AudioSynthesisProvider,
    ImageGenerationProvider,
    SilenceTrimmer,
    SongLibraryWriter,
    TextGenerationProvider,
)
from songworker.store.base import StateStore


@dataclass(slots=True)
class ProcessorDeps:
    """Collaborators shared by every stage processor."""

    store: StateStore
    text: TextGenerationProvider
    image: ImageGenerationProvider
    audio: AudioSynthesisProvider
    library: SongLibraryWriter | None
    trimmer: SilenceTrimmer | None
    config: OrchestratorConfig
    providers: ProviderConfig
    rng: random.Random = field(default_factory=random.Random)

    @property
    def text_timeout_s(self) -> float:
        return self.providers.text_timeout_ms / 1000.0

    @property
    def image_timeout_s(self) -> float:
        return self.providers.image_timeout_ms / 1000.0

    @property
    def audio_timeout_s(self) -> float:
        return self.providers.audio_timeout_ms / 1000.0

    @property
    def download_timeout_s(self) -> float:
        return self.providers.download_timeout_ms / 1000.0


def truncate_error(message: str, limit: int = 512) -> str:
    text = message.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def describe_error(exc: BaseException) -> str:
    message = str(exc) or exc.__class__.__name__
    return truncate_error(message)


def elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


__all__ = ["ProcessorDeps", "describe_error", "elapsed_ms", "truncate_error"]
