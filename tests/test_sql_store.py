import pytest

from songworker.errors import InvalidTransitionError, NotFoundError
from songworker.orchestrator.status import CoverStatus, SessionStatus, SongStatus
from songworker.store import SqlStateStore

from tests.helpers import create_session, make_metadata, song_in_status


@pytest.mark.asyncio
async def test_create_and_list_serviced_sessions(store: SqlStateStore) -> None:
    first = await create_session(store, name="first")
    second = await create_session(store, name="second")
    await store.update_session_status(second.id, SessionStatus.CLOSED)

    serviced = await store.list_serviced_sessions()

    assert [session.id for session in serviced] == [first.id]
    assert serviced[0].status is SessionStatus.ACTIVE
    assert serviced[0].songs_generated == 0


@pytest.mark.asyncio
async def test_metadata_claim_has_a_single_winner(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await store.insert_pending_work_item(session.id, 1.0)

    assert await store.claim_for_metadata(song.id) is True
    assert await store.claim_for_metadata(song.id) is False

    completed = await store.complete_metadata(
        song.id, make_metadata(), llm_provider="ollama", llm_model="llama3"
    )
    assert completed is True
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.METADATA_READY
    assert stored.title == "Song 1"
    assert stored.llm_model == "llama3"
    assert stored.generation_started_at is not None


@pytest.mark.asyncio
async def test_complete_metadata_is_ignored_after_revert(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await store.insert_pending_work_item(session.id, 1.0)
    await store.claim_for_metadata(song.id)

    assert await store.revert_transient_statuses(session.id) == 1
    completed = await store.complete_metadata(
        song.id, make_metadata(), llm_provider="ollama", llm_model="llama3"
    )

    assert completed is False
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.PENDING
    assert stored.title is None


@pytest.mark.asyncio
async def test_audio_claim_is_single_flight_per_session(store: SqlStateStore) -> None:
    session = await create_session(store)
    first = await song_in_status(store, session.id, SongStatus.METADATA_READY, order_index=1.0)
    second = await song_in_status(store, session.id, SongStatus.METADATA_READY, order_index=2.0)

    assert await store.claim_for_audio(first.id) is True
    assert await store.claim_for_audio(second.id) is False

    assert await store.update_ace_task(first.id, "task-1") is True
    assert await store.claim_for_audio(second.id) is False

    stored = await store.get_song(first.id)
    assert stored is not None
    assert stored.status is SongStatus.GENERATING_AUDIO
    assert stored.ace_task_id == "task-1"
    assert stored.ace_submitted_at is not None


@pytest.mark.asyncio
async def test_mark_error_respects_retry_budget(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await song_in_status(store, session.id, SongStatus.SUBMITTING_TO_ACE)

    assert await store.mark_error(
        song.id, "boom", errored_at_status="submitting_to_ace", auto_retry_max=1
    )
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.RETRY_PENDING
    assert stored.errored_at_status == "submitting_to_ace"

    assert await store.retry_errored_song(song.id) is True
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.METADATA_READY
    assert stored.retry_count == 1
    assert stored.error_message is None

    await store.claim_for_audio(song.id)
    assert await store.mark_error(
        song.id, "boom again", errored_at_status="submitting_to_ace", auto_retry_max=1
    )
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.ERROR
    assert stored.error_message == "boom again"


@pytest.mark.asyncio
async def test_mark_error_skips_songs_that_moved_on(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await song_in_status(store, session.id, SongStatus.READY)

    assert await store.mark_error(song.id, "late", errored_at_status="saving") is False
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.READY


@pytest.mark.asyncio
async def test_metadata_retry_returns_to_pending(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await song_in_status(store, session.id, SongStatus.GENERATING_METADATA)
    await store.mark_error(
        song.id, "bad json", errored_at_status="generating_metadata", auto_retry_max=2
    )

    assert await store.retry_errored_song(song.id) is True
    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.status is SongStatus.PENDING


@pytest.mark.asyncio
async def test_request_and_abandon_retry(store: SqlStateStore) -> None:
    session = await create_session(store)
    errored = await song_in_status(store, session.id, SongStatus.ERROR, order_index=1.0)
    ready = await song_in_status(store, session.id, SongStatus.READY, order_index=2.0)

    assert await store.request_retry(errored.id) is True
    assert await store.request_retry(ready.id) is False
    with pytest.raises(NotFoundError):
        await store.request_retry("missing")

    assert await store.abandon_retry(errored.id, "closed") is True
    stored = await store.get_song(errored.id)
    assert stored is not None
    assert stored.status is SongStatus.ERROR
    assert stored.error_message == "closed"


@pytest.mark.asyncio
async def test_revert_transient_statuses(store: SqlStateStore) -> None:
    session = await create_session(store)
    metadata = await song_in_status(store, session.id, SongStatus.GENERATING_METADATA, order_index=1.0)
    audio = await song_in_status(
        store,
        session.id,
        SongStatus.GENERATING_AUDIO,
        order_index=2.0,
        ace_task_id="task-9",
    )
    saving = await song_in_status(store, session.id, SongStatus.SAVING, order_index=3.0)
    ready = await song_in_status(store, session.id, SongStatus.READY, order_index=4.0)

    assert await store.revert_transient_statuses(session.id) == 3

    songs = {song.id: song for song in await store.list_songs(session.id)}
    assert songs[metadata.id].status is SongStatus.PENDING
    assert songs[audio.id].status is SongStatus.METADATA_READY
    assert songs[audio.id].ace_task_id is None
    assert songs[saving.id].status is SongStatus.METADATA_READY
    assert songs[ready.id].status is SongStatus.READY


@pytest.mark.asyncio
async def test_recover_from_restart_keeps_audio_tasks(store: SqlStateStore) -> None:
    session = await create_session(store)
    metadata = await song_in_status(store, session.id, SongStatus.GENERATING_METADATA, order_index=1.0)
    submitting = await song_in_status(store, session.id, SongStatus.SUBMITTING_TO_ACE, order_index=2.0)
    audio = await song_in_status(
        store,
        session.id,
        SongStatus.GENERATING_AUDIO,
        order_index=3.0,
        ace_task_id="task-3",
    )
    saving = await song_in_status(
        store,
        session.id,
        SongStatus.SAVING,
        order_index=4.0,
        ace_task_id="task-4",
        cover_status=CoverStatus.GENERATING.value,
    )

    assert await store.recover_from_restart(session.id) == 3

    songs = {song.id: song for song in await store.list_songs(session.id)}
    assert songs[metadata.id].status is SongStatus.PENDING
    assert songs[submitting.id].status is SongStatus.METADATA_READY
    assert songs[audio.id].status is SongStatus.GENERATING_AUDIO
    assert songs[audio.id].ace_task_id == "task-3"
    assert songs[saving.id].status is SongStatus.GENERATING_AUDIO
    assert songs[saving.id].ace_task_id == "task-4"
    assert songs[saving.id].cover_status is None


@pytest.mark.asyncio
async def test_cover_claim_and_completion(store: SqlStateStore) -> None:
    session = await create_session(store)
    song = await song_in_status(store, session.id, SongStatus.METADATA_READY, cover_prompt="disc")

    assert await store.claim_for_cover(song.id) is True
    assert await store.claim_for_cover(song.id) is False
    assert await store.complete_cover(song.id, "data:image/png;base64,AAAA") is True

    stored = await store.get_song(song.id)
    assert stored is not None
    assert stored.cover_status == "done"
    assert stored.cover_url == "data:image/png;base64,AAAA"
    assert await store.fail_cover(song.id) is False


@pytest.mark.asyncio
async def test_interrupt_lands_half_a_slot_later(store: SqlStateStore) -> None:
    session = await create_session(store)

    song = await store.insert_interrupt(session.id, "  add a saxophone  ", after_order_index=3.0)

    assert song.order_index == 3.5
    assert song.is_interrupt is True
    assert song.interrupt_prompt == "add a saxophone"
    assert song.status is SongStatus.PENDING

    with pytest.raises(ValueError):
        await store.insert_interrupt(session.id, "   ", after_order_index=3.0)
    with pytest.raises(NotFoundError):
        await store.insert_interrupt("missing", "jazz", after_order_index=1.0)


@pytest.mark.asyncio
async def test_session_close_flow(store: SqlStateStore) -> None:
    session = await create_session(store)

    assert await store.request_close(session.id) is True
    assert await store.request_close(session.id) is False
    assert await store.update_session_status(session.id, SessionStatus.CLOSED) is True
    with pytest.raises(InvalidTransitionError):
        await store.update_session_status(session.id, SessionStatus.ACTIVE)
    with pytest.raises(NotFoundError):
        await store.request_close("missing")


@pytest.mark.asyncio
async def test_settings_round_trip(store: SqlStateStore) -> None:
    await store.set_setting("image_provider", "ollama")
    await store.set_setting("text_model", "  mistral ")

    settings = await store.get_settings()

    assert settings.image_provider == "comfyui"
    assert settings.text_model == "mistral"
    assert settings.text_provider is None


@pytest.mark.asyncio
async def test_songs_generated_and_playback_position(store: SqlStateStore) -> None:
    session = await create_session(store)

    await store.increment_songs_generated(session.id)
    await store.increment_songs_generated(session.id)
    await store.set_playback_position(session.id, 2.0)

    stored = await store.get_session(session.id)
    assert stored is not None
    assert stored.songs_generated == 2
    assert stored.current_order_index == 2.0
