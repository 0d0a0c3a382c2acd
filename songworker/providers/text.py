"""Text generation clients (Ollama and OpenRouter) for song metadata."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from songworker.config import ProviderConfig
from songworker.errors import ProviderError
from songworker.logging import get_logger
from songworker.providers.base import TextGenerationParams
from songworker.providers.http import ProviderHttpClient
from songworker.providers.prompts import SONG_SCHEMA, build_user_prompt, parse_song_metadata
from songworker.store.base import SongMetadata

logger = get_logger(__name__)


def _messages(system: str, user: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


@dataclass(slots=True)
class OllamaTextClient:
    http: ProviderHttpClient

    async def complete(self, system: str, user: str, *, model: str) -> str:
        payload = {
            "model": model,
            "messages": _messages(system, user),
            "stream": False,
            "format": SONG_SCHEMA,
            "think": False,
            "keep_alive": "10m",
            "options": {"temperature": 1.0},
        }
        data = await self.http.request_json("POST", "/api/chat", json=payload)
        message = data.get("message") if isinstance(data, Mapping) else None
        content = message.get("content") if isinstance(message, Mapping) else None
        return str(content or "")


@dataclass(slots=True)
class OpenRouterTextClient:
    http: ProviderHttpClient

    async def complete(self, system: str, user: str, *, model: str) -> str:
        payload = {
            "model": model,
            "messages": _messages(system, user),
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "song_metadata",
                    "strict": True,
                    "schema": SONG_SCHEMA,
                },
            },
        }
        data = await self.http.request_json("POST", "/chat/completions", json=payload)
        choices = data.get("choices") if isinstance(data, Mapping) else None
        if not choices:
            return ""
        message = choices[0].get("message") if isinstance(choices[0], Mapping) else None
        content = message.get("content") if isinstance(message, Mapping) else None
        return str(content or "")


class TextProviderRouter:
    """Dispatch metadata generation to the configured text backend."""

    def __init__(self, backends: Mapping[str, Any]) -> None:
        self._backends = dict(backends)

    async def aclose(self) -> None:
        for backend in self._backends.values():
            await backend.http.aclose()

    @classmethod
    def from_config(
        cls,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> TextProviderRouter:
        ollama = OllamaTextClient(
            ProviderHttpClient(
                provider="ollama",
                base_url=config.ollama_url,
                timeout_ms=config.text_timeout_ms,
                transport=transport,
            )
        )
        openrouter_headers = {"Content-Type": "application/json"}
        if config.openrouter_api_key:
            openrouter_headers["Authorization"] = f"Bearer {config.openrouter_api_key}"
        openrouter = OpenRouterTextClient(
            ProviderHttpClient(
                provider="openrouter",
                base_url=config.openrouter_url,
                timeout_ms=config.text_timeout_ms,
                headers=openrouter_headers,
                transport=transport,
            )
        )
        return cls({"ollama": ollama, "openrouter": openrouter})

    async def generate(
        self,
        prompt: str,
        system: str,
        params: TextGenerationParams,
        *,
        provider: str,
        model: str,
    ) -> SongMetadata:
        backend = self._backends.get(provider)
        if backend is None:
            raise ProviderError(f"Unknown text provider '{provider}'", provider=provider)
        if not model:
            raise ProviderError(f"No model configured for {provider}", provider=provider)
        logger.debug("Requesting song metadata from %s/%s", provider, model)
        text = await backend.complete(system, build_user_prompt(prompt, params), model=model)
        return parse_song_metadata(text, provider=provider, target_bpm=params.target_bpm)


__all__ = ["OllamaTextClient", "OpenRouterTextClient", "TextProviderRouter"]
