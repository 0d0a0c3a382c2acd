from __future__ import annotations

from pathlib import Path

from songworker.config import (
    DEFAULT_ACE_STEP_URL,
    OrchestratorConfig,
    get_env,
    load_config,
    load_runtime_env,
    override_runtime_env,
)


def test_defaults() -> None:
    config = load_config({})

    assert config.orchestrator.tick_interval_ms == 2_000
    assert config.orchestrator.tick_interval == 2.0
    assert config.orchestrator.buffer_target == 5
    assert config.orchestrator.stale_timeout_s == 1_200
    assert config.orchestrator.auto_retry_max == 0
    assert config.providers.ace_step_url == DEFAULT_ACE_STEP_URL
    assert config.providers.openrouter_api_key is None
    assert config.storage.music_storage_path == Path("/mnt/music/autoplayer")
    assert config.storage.trim_silence is True
    assert config.database.url == "sqlite:///songworker.db"
    assert config.logging.level == "INFO"
    assert config.api.enabled is True
    assert config.api.port == 8089


def test_values_are_parsed_and_bounded() -> None:
    config = load_config(
        {
            "SONGWORKER_TICK_INTERVAL_MS": "1",
            "SONGWORKER_BUFFER_TARGET": "8",
            "SONGWORKER_AUTO_RETRY_MAX": "not-a-number",
            "SONGWORKER_API_PORT": "99999",
            "SONGWORKER_API_ENABLED": "off",
            "TRIM_TRAILING_SILENCE": "false",
            "OPENROUTER_API_KEY": "  ",
            "COMFYUI_WORKFLOW_PATH": "~/workflow.json",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.orchestrator.tick_interval_ms == 10
    assert config.orchestrator.buffer_target == 8
    assert config.orchestrator.auto_retry_max == 0
    assert config.api.port == 65_535
    assert config.api.enabled is False
    assert config.storage.trim_silence is False
    assert config.providers.openrouter_api_key is None
    assert config.providers.comfyui_workflow_path == Path("~/workflow.json").expanduser()
    assert config.logging.level == "DEBUG"


def test_orchestrator_config_from_env() -> None:
    config = OrchestratorConfig.from_env(
        {"SONGWORKER_STALE_TIMEOUT_S": "60", "SONGWORKER_NOT_FOUND_GRACE_S": "-5"}
    )

    assert config.stale_timeout_s == 60
    assert config.not_found_grace_s == 0


def test_env_file_is_merged_under_environment(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# comment\nDATABASE_URL='sqlite:///from-file.db'\nLOG_LEVEL=WARNING\nbroken line\n",
        encoding="utf-8",
    )

    merged = load_runtime_env(base_env={"LOG_LEVEL": "ERROR"}, env_file=env_file)

    assert merged["DATABASE_URL"] == "sqlite:///from-file.db"
    assert merged["LOG_LEVEL"] == "ERROR"
    assert "broken line" not in merged
    assert load_runtime_env(base_env={}, env_file=tmp_path / "missing") == {}


def test_runtime_env_override() -> None:
    override_runtime_env({"ACE_STEP_URL": "http://gpu:8001"})

    assert get_env("ACE_STEP_URL") == "http://gpu:8001"
    assert get_env("OLLAMA_URL", "fallback") == "fallback"
    assert load_config().providers.ace_step_url == "http://gpu:8001"
