"""Bootstrap helpers for worker runtime wiring."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import random

import httpx

from songworker.config import AppConfig
from songworker.logging import get_logger
from songworker.orchestrator.processors import ProcessorDeps
from songworker.orchestrator.recovery import RecoveryReport, run_startup_recovery
from songworker.orchestrator.scheduler import Scheduler
from songworker.providers import (
    AceStepClient,
    FfmpegSilenceTrimmer,
    ImageProviderRouter,
    SongLibrary,
    TextProviderRouter,
)
from songworker.store import SqlStateStore, StateStore

logger = get_logger(__name__)


@dataclass(slots=True)
class WorkerRuntime:
    """Container bundling the scheduler with its resolved dependencies."""

    config: AppConfig
    store: StateStore
    deps: ProcessorDeps
    scheduler: Scheduler
    recovery: RecoveryReport | None = None

    async def recover(self) -> RecoveryReport:
        self.recovery = await run_startup_recovery(self.store)
        return self.recovery

    async def run(self, lifespan: asyncio.Event | None = None) -> None:
        """Recover in-flight songs, then tick until ``lifespan`` is set."""

        await self.recover()
        try:
            await self.scheduler.run(lifespan)
        finally:
            await self.scheduler.stop()
            await self.aclose()

    async def aclose(self) -> None:
        """Release the pooled provider HTTP clients."""

        for provider in (self.deps.text, self.deps.image, self.deps.audio):
            close = getattr(provider, "aclose", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:
                logger.warning("Closing %s failed", type(provider).__name__, exc_info=True)


def build_processor_deps(
    config: AppConfig,
    store: StateStore,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    rng: random.Random | None = None,
) -> ProcessorDeps:
    providers = config.providers
    storage = config.storage
    return ProcessorDeps(
        store=store,
        text=TextProviderRouter.from_config(providers, transport=transport),
        image=ImageProviderRouter.from_config(providers, transport=transport),
        audio=AceStepClient.from_config(providers, transport=transport),
        library=SongLibrary(storage.music_storage_path),
        trimmer=FfmpegSilenceTrimmer(
            binary=storage.ffmpeg_binary, enabled=storage.trim_silence
        ),
        config=config.orchestrator,
        providers=providers,
        rng=rng or random.Random(),
    )


def bootstrap_worker(
    config: AppConfig,
    *,
    store: StateStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> WorkerRuntime:
    """Initialise the state store, providers and scheduler from ``config``."""

    resolved_store: StateStore = store or SqlStateStore.from_url(
        config.database.url,
        stale_after_s=config.orchestrator.stale_timeout_s,
    )
    deps = build_processor_deps(config, resolved_store, transport=transport)
    scheduler = Scheduler(deps)
    logger.info(
        "Worker bootstrapped (tick=%sms, buffer=%s, library=%s)",
        config.orchestrator.tick_interval_ms,
        config.orchestrator.buffer_target,
        config.storage.music_storage_path,
    )
    return WorkerRuntime(config=config, store=resolved_store, deps=deps, scheduler=scheduler)


__all__ = ["WorkerRuntime", "bootstrap_worker", "build_processor_deps"]
