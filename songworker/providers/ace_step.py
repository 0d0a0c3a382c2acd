"""Client for the ACE-Step audio synthesis API."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import json
from typing import Any

import httpx

from songworker.config import ProviderConfig
from songworker.errors import ProviderError
from songworker.providers.base import (
    AudioPollResult,
    AudioSubmitRequest,
    AudioTaskStatus,
)
from songworker.providers.http import ProviderHttpClient

DEFAULT_INFERENCE_STEPS = 12
DEFAULT_VOCAL_LANGUAGE = "en"
DEFAULT_LM_TEMPERATURE = 0.85
DEFAULT_LM_CFG_SCALE = 2.5
DEFAULT_INFER_METHOD = "ode"

_TASK_RUNNING = 0
_TASK_SUCCEEDED = 1
_TASK_FAILED = 2


def build_release_payload(request: AudioSubmitRequest) -> dict[str, Any]:
    prompt = request.caption
    if request.vocal_style:
        prompt = f"{request.caption}, {request.vocal_style}"
    payload: dict[str, Any] = {
        "prompt": prompt,
        "lyrics": request.lyrics,
        "bpm": request.bpm,
        "key_scale": request.key_scale,
        "time_signature": request.time_signature,
        "audio_duration": request.audio_duration,
        "thinking": True,
        "batch_size": 1,
        "inference_steps": request.inference_steps or DEFAULT_INFERENCE_STEPS,
        "vocal_language": request.vocal_language or DEFAULT_VOCAL_LANGUAGE,
        "use_format": False,
        "use_cot_caption": False,
        "use_cot_metas": False,
        "lm_temperature": (
            request.lm_temperature
            if request.lm_temperature is not None
            else DEFAULT_LM_TEMPERATURE
        ),
        "lm_cfg_scale": (
            request.lm_cfg_scale if request.lm_cfg_scale is not None else DEFAULT_LM_CFG_SCALE
        ),
        "infer_method": request.infer_method or DEFAULT_INFER_METHOD,
        "audio_format": "mp3",
    }
    if request.ace_model:
        payload["model"] = request.ace_model
    return payload


def parse_task_result(task: Mapping[str, Any]) -> AudioPollResult:
    status = task.get("status")
    if status == _TASK_RUNNING:
        return AudioPollResult(AudioTaskStatus.RUNNING)
    if status == _TASK_FAILED:
        return AudioPollResult(AudioTaskStatus.FAILED, error="Audio generation failed")
    if status != _TASK_SUCCEEDED:
        return AudioPollResult(AudioTaskStatus.RUNNING)

    raw_result = task.get("result")
    try:
        items = json.loads(raw_result) if isinstance(raw_result, str) else raw_result
    except ValueError as exc:
        raise ProviderError("Failed to parse ACE-Step result JSON", provider="ace-step") from exc
    if not items or not isinstance(items, list):
        raise ProviderError("No audio files in ACE-Step result", provider="ace-step")
    first = items[0]
    audio_path = first.get("file") if isinstance(first, Mapping) else None
    if not audio_path:
        raise ProviderError("ACE-Step result has no file path", provider="ace-step")
    return AudioPollResult(AudioTaskStatus.SUCCEEDED, audio_path=str(audio_path))


@dataclass(slots=True)
class AceStepClient:
    http: ProviderHttpClient
    download_timeout_ms: int = 120_000

    @classmethod
    def from_config(
        cls,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> AceStepClient:
        return cls(
            http=ProviderHttpClient(
                provider="ace-step",
                base_url=config.ace_step_url,
                timeout_ms=config.audio_timeout_ms,
                transport=transport,
            ),
            download_timeout_ms=config.download_timeout_ms,
        )

    async def submit(self, request: AudioSubmitRequest) -> str:
        data = await self.http.request_json(
            "POST", "/release_task", json=build_release_payload(request)
        )
        task_id = None
        if isinstance(data, Mapping) and isinstance(data.get("data"), Mapping):
            task_id = data["data"].get("task_id")
        if not task_id:
            detail = data.get("error") if isinstance(data, Mapping) else None
            raise ProviderError(
                str(detail or "No task_id returned from ACE-Step"), provider="ace-step"
            )
        return str(task_id)

    async def poll(self, task_id: str) -> AudioPollResult:
        data = await self.http.request_json(
            "POST",
            "/query_result",
            json={"task_id_list": [task_id]},
            retry=True,
        )
        results = data.get("data") if isinstance(data, Mapping) else None
        if not isinstance(results, list) or not results:
            return AudioPollResult(AudioTaskStatus.NOT_FOUND)
        task = results[0]
        if not isinstance(task, Mapping):
            return AudioPollResult(AudioTaskStatus.NOT_FOUND)
        return parse_task_result(task)

    async def download(self, audio_path: str) -> bytes:
        response = await self.http.request(
            "GET",
            audio_path,
            timeout_ms=self.download_timeout_ms,
            retry=True,
        )
        if not response.content:
            raise ProviderError("ACE-Step returned an empty audio file", provider="ace-step")
        return response.content

    def audio_url(self, song_id: str, audio_path: str) -> str:
        return f"{self.http.base_url.rstrip('/')}{audio_path}"

    async def aclose(self) -> None:
        await self.http.aclose()


__all__ = ["AceStepClient", "build_release_payload", "parse_task_result"]
