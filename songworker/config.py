"""Application configuration utilities for the song worker."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

DEFAULT_TICK_INTERVAL_MS = 2_000
DEFAULT_BUFFER_TARGET = 5
DEFAULT_STALE_TIMEOUT_S = 20 * 60
DEFAULT_NOT_FOUND_GRACE_S = 2 * 60
DEFAULT_AUTO_RETRY_MAX = 0
DEFAULT_SHUTDOWN_GRACE_MS = 5_000

DEFAULT_ACE_STEP_URL = "http://127.0.0.1:8001"
DEFAULT_OLLAMA_URL = "http://127.0.0.1:11434"
DEFAULT_OPENROUTER_URL = "https://openrouter.ai/api/v1"
DEFAULT_COMFYUI_URL = "http://127.0.0.1:8188"
DEFAULT_TEXT_TIMEOUT_MS = 180_000
DEFAULT_IMAGE_TIMEOUT_MS = 180_000
DEFAULT_AUDIO_TIMEOUT_MS = 30_000
DEFAULT_DOWNLOAD_TIMEOUT_MS = 120_000

DEFAULT_MUSIC_STORAGE_PATH = "/mnt/music/autoplayer"
DEFAULT_DATABASE_URL = "sqlite:///songworker.db"
DEFAULT_API_HOST = "0.0.0.0"
DEFAULT_API_PORT = 8089

_RUNTIME_ENV_CACHE: dict[str, str] | None = None


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env_values[key.strip()] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(
    *,
    base_env: Mapping[str, Any] | None = None,
    env_file: Path | None = None,
) -> dict[str, str]:
    """Merge ``.env`` values with the process environment (environment wins)."""

    file_path = env_file if env_file is not None else Path.cwd() / ".env"
    merged: dict[str, str] = dict(_load_env_file(file_path))
    source = base_env if base_env is not None else os.environ
    for key, value in source.items():
        if value is None:
            continue
        merged[str(key)] = str(value)
    return merged


def get_runtime_env() -> Mapping[str, str]:
    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Replace the cached runtime environment (``None`` forces a reload)."""

    global _RUNTIME_ENV_CACHE
    _RUNTIME_ENV_CACHE = dict(runtime_env) if runtime_env is not None else None


def get_env(name: str, default: str | None = None) -> str | None:
    value = get_runtime_env().get(name)
    if value is None:
        return default
    return value


def _as_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_path(value: Any) -> Path | None:
    text = _optional_str(value)
    if text is None:
        return None
    return Path(text).expanduser()


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    tick_interval_ms: int
    buffer_target: int
    stale_timeout_s: int
    not_found_grace_s: int
    auto_retry_max: int
    shutdown_grace_ms: int

    @property
    def tick_interval(self) -> float:
        return self.tick_interval_ms / 1000.0

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> OrchestratorConfig:
        return cls(
            tick_interval_ms=_bounded_int(
                env.get("SONGWORKER_TICK_INTERVAL_MS"),
                default=DEFAULT_TICK_INTERVAL_MS,
                minimum=10,
            ),
            buffer_target=_bounded_int(
                env.get("SONGWORKER_BUFFER_TARGET"),
                default=DEFAULT_BUFFER_TARGET,
                minimum=0,
            ),
            stale_timeout_s=_bounded_int(
                env.get("SONGWORKER_STALE_TIMEOUT_S"),
                default=DEFAULT_STALE_TIMEOUT_S,
                minimum=1,
            ),
            not_found_grace_s=_bounded_int(
                env.get("SONGWORKER_NOT_FOUND_GRACE_S"),
                default=DEFAULT_NOT_FOUND_GRACE_S,
                minimum=0,
            ),
            auto_retry_max=_bounded_int(
                env.get("SONGWORKER_AUTO_RETRY_MAX"),
                default=DEFAULT_AUTO_RETRY_MAX,
                minimum=0,
            ),
            shutdown_grace_ms=_bounded_int(
                env.get("SONGWORKER_SHUTDOWN_GRACE_MS"),
                default=DEFAULT_SHUTDOWN_GRACE_MS,
                minimum=0,
            ),
        )


@dataclass(slots=True, frozen=True)
class ProviderConfig:
    ace_step_url: str
    ollama_url: str
    openrouter_url: str
    openrouter_api_key: str | None
    comfyui_url: str
    comfyui_workflow_path: Path | None
    text_timeout_ms: int
    image_timeout_ms: int
    audio_timeout_ms: int
    download_timeout_ms: int

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> ProviderConfig:
        return cls(
            ace_step_url=_optional_str(env.get("ACE_STEP_URL")) or DEFAULT_ACE_STEP_URL,
            ollama_url=_optional_str(env.get("OLLAMA_URL")) or DEFAULT_OLLAMA_URL,
            openrouter_url=_optional_str(env.get("OPENROUTER_URL")) or DEFAULT_OPENROUTER_URL,
            openrouter_api_key=_optional_str(env.get("OPENROUTER_API_KEY")),
            comfyui_url=_optional_str(env.get("COMFYUI_URL")) or DEFAULT_COMFYUI_URL,
            comfyui_workflow_path=_optional_path(env.get("COMFYUI_WORKFLOW_PATH")),
            text_timeout_ms=_bounded_int(
                env.get("TEXT_PROVIDER_TIMEOUT_MS"),
                default=DEFAULT_TEXT_TIMEOUT_MS,
                minimum=100,
            ),
            image_timeout_ms=_bounded_int(
                env.get("IMAGE_PROVIDER_TIMEOUT_MS"),
                default=DEFAULT_IMAGE_TIMEOUT_MS,
                minimum=100,
            ),
            audio_timeout_ms=_bounded_int(
                env.get("AUDIO_PROVIDER_TIMEOUT_MS"),
                default=DEFAULT_AUDIO_TIMEOUT_MS,
                minimum=100,
            ),
            download_timeout_ms=_bounded_int(
                env.get("AUDIO_DOWNLOAD_TIMEOUT_MS"),
                default=DEFAULT_DOWNLOAD_TIMEOUT_MS,
                minimum=100,
            ),
        )


@dataclass(slots=True, frozen=True)
class StorageConfig:
    music_storage_path: Path
    ffmpeg_binary: str
    trim_silence: bool

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> StorageConfig:
        raw_path = _optional_str(env.get("MUSIC_STORAGE_PATH")) or DEFAULT_MUSIC_STORAGE_PATH
        return cls(
            music_storage_path=Path(raw_path).expanduser(),
            ffmpeg_binary=_optional_str(env.get("FFMPEG_BINARY")) or "ffmpeg",
            trim_silence=_as_bool(env.get("TRIM_TRAILING_SILENCE"), default=True),
        )


@dataclass(slots=True, frozen=True)
class DatabaseConfig:
    url: str


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str
    log_file: str | None


@dataclass(slots=True, frozen=True)
class ApiConfig:
    enabled: bool
    host: str
    port: int


@dataclass(slots=True, frozen=True)
class AppConfig:
    orchestrator: OrchestratorConfig
    providers: ProviderConfig
    storage: StorageConfig
    database: DatabaseConfig
    logging: LoggingConfig
    api: ApiConfig


def load_config(runtime_env: Mapping[str, Any] | None = None) -> AppConfig:
    """Build the application configuration from ``runtime_env`` or the process env."""

    env: Mapping[str, Any] = runtime_env if runtime_env is not None else get_runtime_env()

    database_url = _optional_str(env.get("DATABASE_URL")) or DEFAULT_DATABASE_URL
    log_level = (_optional_str(env.get("LOG_LEVEL")) or "INFO").upper()

    return AppConfig(
        orchestrator=OrchestratorConfig.from_env(env),
        providers=ProviderConfig.from_env(env),
        storage=StorageConfig.from_env(env),
        database=DatabaseConfig(url=database_url),
        logging=LoggingConfig(level=log_level, log_file=_optional_str(env.get("LOG_FILE"))),
        api=ApiConfig(
            enabled=_as_bool(env.get("SONGWORKER_API_ENABLED"), default=True),
            host=_optional_str(env.get("SONGWORKER_API_HOST")) or DEFAULT_API_HOST,
            port=_bounded_int(
                env.get("SONGWORKER_API_PORT"),
                default=DEFAULT_API_PORT,
                minimum=1,
                maximum=65_535,
            ),
        ),
    )


__all__ = [
    "ApiConfig",
    "AppConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "OrchestratorConfig",
    "ProviderConfig",
    "StorageConfig",
    "get_env",
    "get_runtime_env",
    "load_config",
    "load_runtime_env",
    "override_runtime_env",
]
