from __future__ import annotations

import json

import httpx
import pytest

from songworker.config import ProviderConfig
from songworker.errors import ProviderError
from songworker.providers.ace_step import AceStepClient, build_release_payload, parse_task_result
from songworker.providers.base import AudioSubmitRequest, AudioTaskStatus


def _client(handler) -> AceStepClient:
    config = ProviderConfig.from_env({"ACE_STEP_URL": "http://ace.test:8001"})
    client = AceStepClient.from_config(config, transport=httpx.MockTransport(handler))
    client.http.backoff_base_ms = 1
    return client


def _request(**overrides) -> AudioSubmitRequest:
    values = {
        "lyrics": "[Verse]\nhello",
        "caption": "dusty boom bap",
        "bpm": 88,
        "key_scale": "F minor",
        "time_signature": "4/4",
        "audio_duration": 200,
    }
    values.update(overrides)
    return AudioSubmitRequest(**values)


def test_release_payload_defaults() -> None:
    payload = build_release_payload(_request(vocal_style="raspy male rap"))

    assert payload["prompt"] == "dusty boom bap, raspy male rap"
    assert payload["inference_steps"] == 12
    assert payload["vocal_language"] == "en"
    assert payload["lm_temperature"] == 0.85
    assert payload["infer_method"] == "ode"
    assert payload["audio_format"] == "mp3"
    assert "model" not in payload


def test_release_payload_overrides() -> None:
    payload = build_release_payload(
        _request(inference_steps=50, vocal_language="ja", lm_temperature=0.0, ace_model="turbo")
    )

    assert payload["inference_steps"] == 50
    assert payload["vocal_language"] == "ja"
    assert payload["lm_temperature"] == 0.0
    assert payload["model"] == "turbo"


def test_parse_task_result_statuses() -> None:
    assert parse_task_result({"status": 0}).status is AudioTaskStatus.RUNNING
    assert parse_task_result({"status": 2}).status is AudioTaskStatus.FAILED

    done = parse_task_result({"status": 1, "result": json.dumps([{"file": "/v1/audio/a.mp3"}])})
    assert done.status is AudioTaskStatus.SUCCEEDED
    assert done.audio_path == "/v1/audio/a.mp3"

    with pytest.raises(ProviderError):
        parse_task_result({"status": 1, "result": "[]"})
    with pytest.raises(ProviderError):
        parse_task_result({"status": 1, "result": "{broken"})


@pytest.mark.asyncio
async def test_submit_returns_task_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/release_task"
        body = json.loads(request.content)
        assert body["bpm"] == 88
        return httpx.Response(200, json={"data": {"task_id": "abc"}})

    assert await _client(handler).submit(_request()) == "abc"


@pytest.mark.asyncio
async def test_submit_without_task_id_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": None, "error": "queue full"})

    with pytest.raises(ProviderError) as excinfo:
        await _client(handler).submit(_request())

    assert excinfo.value.message == "queue full"


@pytest.mark.asyncio
async def test_poll_unknown_task() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"task_id_list": ["abc"]}
        return httpx.Response(200, json={"data": []})

    result = await _client(handler).poll("abc")

    assert result.status is AudioTaskStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_poll_retries_transient_failures() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"data": [{"status": 0}]})

    result = await _client(handler).poll("abc")

    assert calls == 2
    assert result.status is AudioTaskStatus.RUNNING


@pytest.mark.asyncio
async def test_download_and_audio_url() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/audio"
        return httpx.Response(200, content=b"ID3audio")

    client = _client(handler)

    assert await client.download("/v1/audio?path=a.mp3") == b"ID3audio"
    assert client.audio_url("song-1", "/v1/audio?path=a.mp3") == (
        "http://ace.test:8001/v1/audio?path=a.mp3"
    )


@pytest.mark.asyncio
async def test_empty_download_fails() -> None:
    client = _client(lambda request: httpx.Response(200, content=b""))

    with pytest.raises(ProviderError):
        await client.download("/v1/audio?path=a.mp3")
