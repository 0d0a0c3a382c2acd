"""Cover art clients: a ComfyUI workflow runner and OpenRouter image models."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
import copy
from dataclasses import dataclass, field
import json
from pathlib import Path
import random
from typing import Any
import uuid

import httpx

from songworker.config import ProviderConfig
from songworker.errors import ProviderError
from songworker.logging import get_logger
from songworker.providers.base import CoverImage
from songworker.providers.http import ProviderHttpClient

logger = get_logger(__name__)

COVER_PROMPT_PREFIX = "Circular CD disc artwork, printed directly on a compact disc surface. "
DEFAULT_CHECKPOINT = "sd_xl_base_1.0.safetensors"

DEFAULT_WORKFLOW: dict[str, Any] = {
    "4": {
        "class_type": "CheckpointLoaderSimple",
        "inputs": {"ckpt_name": DEFAULT_CHECKPOINT},
    },
    "5": {
        "class_type": "EmptyLatentImage",
        "inputs": {"width": 1024, "height": 1024, "batch_size": 1},
    },
    "6": {
        "class_type": "CLIPTextEncode",
        "_meta": {"title": "Positive Prompt"},
        "inputs": {"text": "", "clip": ["4", 1]},
    },
    "7": {
        "class_type": "CLIPTextEncode",
        "_meta": {"title": "Negative Prompt"},
        "inputs": {"text": "text, letters, watermark, typography", "clip": ["4", 1]},
    },
    "3": {
        "class_type": "KSampler",
        "inputs": {
            "seed": 0,
            "steps": 20,
            "cfg": 7.0,
            "sampler_name": "euler",
            "scheduler": "normal",
            "denoise": 1.0,
            "model": ["4", 0],
            "positive": ["6", 0],
            "negative": ["7", 0],
            "latent_image": ["5", 0],
        },
    },
    "8": {
        "class_type": "VAEDecode",
        "inputs": {"samples": ["3", 0], "vae": ["4", 2]},
    },
    "9": {
        "class_type": "SaveImage",
        "inputs": {"filename_prefix": "songworker_cover", "images": ["8", 0]},
    },
}


def prepare_workflow(
    template: Mapping[str, Any],
    prompt: str,
    *,
    checkpoint: str | None = None,
    seed: int | None = None,
) -> dict[str, Any]:
    """Return a copy of ``template`` with the prompt, seed and checkpoint filled in."""

    workflow: dict[str, Any] = copy.deepcopy(dict(template))
    prompt_node: str | None = None
    first_clip_node: str | None = None
    for node_id, node in workflow.items():
        class_type = node.get("class_type")
        inputs = node.setdefault("inputs", {})
        if class_type == "CLIPTextEncode":
            title = str(node.get("_meta", {}).get("title", "")).lower()
            if ("positive" in title or "prompt" in title) and "negative" not in title:
                prompt_node = prompt_node or node_id
            if first_clip_node is None and "negative" not in title:
                first_clip_node = node_id
        elif class_type == "KSampler":
            inputs["seed"] = seed if seed is not None else random.randrange(2**48)
        elif class_type == "CheckpointLoaderSimple" and checkpoint:
            inputs["ckpt_name"] = checkpoint
    target = prompt_node or first_clip_node
    if target is None:
        raise ValueError("Workflow has no CLIPTextEncode node for the prompt")
    workflow[target]["inputs"]["text"] = prompt
    return workflow


def _first_image(history_entry: Mapping[str, Any]) -> Mapping[str, Any] | None:
    outputs = history_entry.get("outputs")
    if not isinstance(outputs, Mapping):
        return None
    for output in outputs.values():
        images = output.get("images") if isinstance(output, Mapping) else None
        if images:
            return images[0]
    return None


@dataclass(slots=True)
class ComfyUIImageClient:
    http: ProviderHttpClient
    workflow: Mapping[str, Any] = field(default_factory=lambda: DEFAULT_WORKFLOW)
    poll_interval: float = 1.0
    timeout_ms: int = 180_000

    async def generate(self, prompt: str, *, model: str | None = None) -> CoverImage:
        graph = prepare_workflow(self.workflow, prompt, checkpoint=model)
        submitted = await self.http.request_json(
            "POST",
            "/prompt",
            json={"prompt": graph, "client_id": str(uuid.uuid4())},
        )
        prompt_id = submitted.get("prompt_id") if isinstance(submitted, Mapping) else None
        if not prompt_id:
            raise ProviderError("ComfyUI did not return a prompt_id", provider="comfyui")

        image_ref = await self._wait_for_image(str(prompt_id))
        response = await self.http.request(
            "GET",
            "/view",
            params={
                "filename": image_ref.get("filename"),
                "subfolder": image_ref.get("subfolder", ""),
                "type": image_ref.get("type", "output"),
            },
            retry=True,
        )
        mime_type = response.headers.get("content-type", "image/png").split(";", 1)[0]
        return CoverImage(data=response.content, mime_type=mime_type or "image/png")

    async def _wait_for_image(self, prompt_id: str) -> Mapping[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_ms / 1000
        while True:
            history = await self.http.request_json("GET", f"/history/{prompt_id}", retry=True)
            entry = history.get(prompt_id) if isinstance(history, Mapping) else None
            if isinstance(entry, Mapping):
                status = entry.get("status")
                if isinstance(status, Mapping) and status.get("status_str") == "error":
                    raise ProviderError("ComfyUI generation failed", provider="comfyui")
                image = _first_image(entry)
                if image is not None:
                    return image
            if loop.time() >= deadline:
                raise ProviderError(
                    f"ComfyUI produced no image within {self.timeout_ms}ms",
                    provider="comfyui",
                    retryable=True,
                )
            await asyncio.sleep(self.poll_interval)


@dataclass(slots=True)
class OpenRouterImageClient:
    http: ProviderHttpClient

    async def generate(self, prompt: str, *, model: str | None = None) -> CoverImage:
        if not model or not model.strip():
            raise ProviderError("OpenRouter image model is required", provider="openrouter")
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "modalities": ["image", "text"],
        }
        data = await self.http.request_json("POST", "/chat/completions", json=payload)
        try:
            url = data["choices"][0]["message"]["images"][0]["image_url"]["url"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                "OpenRouter response contained no image", provider="openrouter"
            ) from exc
        image = CoverImage.from_data_url(url)
        if image is None:
            raise ProviderError(
                "OpenRouter returned an unsupported image reference", provider="openrouter"
            )
        return image


class ImageProviderRouter:
    """Dispatch cover generation to the provider selected in settings."""

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
    ) -> ImageProviderRouter:
        workflow: Mapping[str, Any] = DEFAULT_WORKFLOW
        if config.comfyui_workflow_path is not None:
            workflow = load_workflow(config.comfyui_workflow_path)
        comfyui = ComfyUIImageClient(
            ProviderHttpClient(
                provider="comfyui",
                base_url=config.comfyui_url,
                timeout_ms=config.image_timeout_ms,
                transport=transport,
            ),
            workflow=workflow,
            timeout_ms=config.image_timeout_ms,
        )
        headers = {"Content-Type": "application/json"}
        if config.openrouter_api_key:
            headers["Authorization"] = f"Bearer {config.openrouter_api_key}"
        openrouter = OpenRouterImageClient(
            ProviderHttpClient(
                provider="openrouter",
                base_url=config.openrouter_url,
                timeout_ms=config.image_timeout_ms,
                headers=headers,
                transport=transport,
            )
        )
        return cls({"comfyui": comfyui, "openrouter": openrouter})

    async def generate(
        self, prompt: str, *, provider: str, model: str | None
    ) -> CoverImage | None:
        backend = self._backends.get(provider)
        if backend is None:
            logger.warning("Unsupported image provider %s; skipping cover", provider)
            return None
        return await backend.generate(COVER_PROMPT_PREFIX + prompt, model=model)


def load_workflow(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        workflow = json.load(handle)
    if not isinstance(workflow, dict):
        raise ValueError(f"ComfyUI workflow {path} must be a JSON object")
    return workflow


__all__ = [
    "COVER_PROMPT_PREFIX",
    "ComfyUIImageClient",
    "DEFAULT_WORKFLOW",
    "ImageProviderRouter",
    "OpenRouterImageClient",
    "load_workflow",
    "prepare_workflow",
]
