from __future__ import annotations

import asyncio
import random

import pytest

from songworker.errors import ProviderError
from songworker.orchestrator.processors import choose_distance, is_duplicate, process_metadata
from songworker.orchestrator.session_state import CancellationToken
from songworker.orchestrator.status import SessionMode, SongStatus
from songworker.providers.base import PromptDistance, RecentSong
from songworker.store import SessionRecord, SongRecord, SqlStateStore, WorkerSettings

from tests.helpers import (
    FakeTextProvider,
    create_session,
    make_deps,
    make_metadata,
    song_in_status,
)


class _FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__()
        self._value = value

    def random(self) -> float:
        return self._value


async def _run(store: SqlStateStore, session_id: str, deps, token=None, settings=None) -> str:
    session = await store.get_session(session_id)
    assert session is not None
    snapshot = await store.get_work_queue_snapshot(session_id)
    return await process_metadata(
        session,
        snapshot,
        deps=deps,
        token=token or CancellationToken(session_id),
        settings=settings or WorkerSettings(),
    )


@pytest.mark.asyncio
async def test_pending_song_gets_metadata(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await store.insert_pending_work_item(session.id, 1.0)
    text = FakeTextProvider()
    deps = make_deps(store, text=text)

    outcome = await _run(store, session.id, deps)

    assert outcome == "completed"
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.METADATA_READY
    assert stored.title == "Song 1"
    assert stored.cover_prompt == "a chrome car under violet neon"
    call = text.calls[0]
    assert call["prompt"] == "dreamy synthwave for a night drive"
    assert call["provider"] == "ollama"
    assert call["model"] == "llama3"


@pytest.mark.asyncio
async def test_settings_override_session_text_provider(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await store.insert_pending_work_item(session.id, 1.0)
    text = FakeTextProvider()
    settings = WorkerSettings(text_provider="openrouter", text_model="gpt-4o-mini")

    await _run(store, session.id, make_deps(store, text=text), settings=settings)

    assert text.calls[0]["provider"] == "openrouter"
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.llm_provider == "openrouter"
    assert stored.llm_model == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_interrupt_prompt_is_generated_faithfully(store: SqlStateStore) -> None:
    session = await create_session(store)
    await store.insert_interrupt(session.id, "a jazz ballad", after_order_index=0.0)
    text = FakeTextProvider()

    await _run(store, session.id, make_deps(store, text=text))

    call = text.calls[0]
    assert call["prompt"] == "a jazz ballad"
    assert call["params"].distance is PromptDistance.FAITHFUL


@pytest.mark.asyncio
async def test_duplicate_title_is_regenerated_once(store: SqlStateStore) -> None:
    session = await create_session(store)
    await song_in_status(
        store,
        session.id,
        SongStatus.READY,
        order_index=1.0,
        title="Midnight Run",
        artist_name="Neon Ghost",
    )
    song = await store.insert_pending_work_item(session.id, 2.0)
    text = FakeTextProvider(
        [make_metadata(1, title="midnight run "), make_metadata(2)]
    )

    await _run(store, session.id, make_deps(store, text=text))

    assert len(text.calls) == 2
    assert text.calls[0]["params"].recent_songs[0].title == "Midnight Run"
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.title == "Song 2"


@pytest.mark.asyncio
async def test_second_duplicate_is_accepted(store: SqlStateStore) -> None:
    session = await create_session(store)
    await song_in_status(
        store,
        session.id,
        SongStatus.READY,
        order_index=1.0,
        title="Midnight Run",
        artist_name="Neon Ghost",
    )
    song = await store.insert_pending_work_item(session.id, 2.0)
    text = FakeTextProvider(
        [
            make_metadata(1, artist_name="Neon Ghost"),
            make_metadata(2, artist_name="NEON GHOST"),
        ]
    )

    await _run(store, session.id, make_deps(store, text=text))

    assert len(text.calls) == 2
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.METADATA_READY
    assert stored.title == "Song 2"


@pytest.mark.asyncio
async def test_provider_failure_marks_error(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await store.insert_pending_work_item(session.id, 1.0)
    text = FakeTextProvider([ProviderError("ollama error 500: boom", provider="ollama")])

    outcome = await _run(store, session.id, make_deps(store, text=text))

    assert outcome == "failed"
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.ERROR
    assert stored.errored_at_status == "generating_metadata"
    assert stored.error_message == "ollama error 500: boom"


@pytest.mark.asyncio
async def test_provider_failure_with_retry_budget(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await store.insert_pending_work_item(session.id, 1.0)
    text = FakeTextProvider([ProviderError("bad json", provider="ollama")])

    await _run(store, session.id, make_deps(store, text=text, auto_retry_max=2))

    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.RETRY_PENDING


@pytest.mark.asyncio
async def test_slow_provider_times_out(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await store.insert_pending_work_item(session.id, 1.0)
    text = FakeTextProvider()
    text.gate = asyncio.Event()
    deps = make_deps(store, text=text, provider_env={"TEXT_PROVIDER_TIMEOUT_MS": "100"})

    outcome = await _run(store, session.id, deps)

    assert outcome == "failed"
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.ERROR
    assert "timed out after 100ms" in (stored.error_message or "")


@pytest.mark.asyncio
async def test_cancelled_token_leaves_claim_for_revert(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await store.insert_pending_work_item(session.id, 1.0)
    token = CancellationToken(session.id)
    token.cancel()
    text = FakeTextProvider()

    outcome = await _run(store, session.id, make_deps(store, text=text), token=token)

    assert outcome == "cancelled"
    assert text.calls == []
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.GENERATING_METADATA


@pytest.mark.asyncio
async def test_idle_without_pending_songs(store: SqlStateStore) -> None:
    session = await create_session(store)

    assert await _run(store, session.id, make_deps(store)) == "idle"


@pytest.mark.asyncio
async def test_lost_claim_is_skipped(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await store.insert_pending_work_item(session.id, 1.0)
    snapshot = await store.get_work_queue_snapshot(session.id)
    await store.claim_for_metadata(song.id)
    text = FakeTextProvider()
    record = await store.get_session(session.id)
    assert record is not None

    outcome = await process_metadata(
        record,
        snapshot,
        deps=make_deps(store, text=text),
        token=CancellationToken(session.id),
        settings=WorkerSettings(),
    )

    assert outcome == "skipped"
    assert text.calls == []


def test_choose_distance() -> None:
    endless = SessionRecord(id="s", name="n", prompt="p", llm_provider="o", llm_model="m")
    oneshot = SessionRecord(
        id="s", name="n", prompt="p", llm_provider="o", llm_model="m", mode=SessionMode.ONESHOT
    )
    plain = SongRecord(id="a", session_id="s", order_index=1.0, status=SongStatus.PENDING)
    interrupt = SongRecord(
        id="b",
        session_id="s",
        order_index=1.5,
        status=SongStatus.PENDING,
        interrupt_prompt="jazz",
    )

    assert choose_distance(oneshot, plain, _FixedRandom(0.99)) is PromptDistance.FAITHFUL
    assert choose_distance(endless, interrupt, _FixedRandom(0.99)) is PromptDistance.FAITHFUL
    assert choose_distance(endless, plain, _FixedRandom(0.1)) is PromptDistance.CLOSE
    assert choose_distance(endless, plain, _FixedRandom(0.6)) is PromptDistance.GENERAL


def test_is_duplicate_compares_trimmed_lowercase() -> None:
    recent = [RecentSong(title="Blue Hour", artist_name="Lumen")]

    assert is_duplicate(make_metadata(title=" blue hour"), recent)
    assert is_duplicate(make_metadata(artist_name="LUMEN "), recent)
    assert not is_duplicate(make_metadata(), recent)
    assert not is_duplicate(make_metadata(), [])
