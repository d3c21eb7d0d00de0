from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from taxonomy_worker.config import (
    LOCAL_ENDPOINT,
    ConfigError,
    GitSettings,
    IlabConfig,
    PrecheckSettings,
    RuntimeSettings,
    Settings,
    load_ilab_config,
)

pytestmark = [
    allure.epic("Taxonomy Jobs"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "TAXONOMY_WORKER_GITHUB_TOKEN",
    "TAXONOMY_WORKER_GITHUB_USERNAME",
    "ILWORKER_GITHUB_TOKEN",
    "ILWORKER_GITHUB_USERNAME",
    "PRECHECK_ENDPOINT",
    "TAXONOMY_WORKER_PRECHECK_ENDPOINT",
    "TAXONOMY_WORKER_TLS_INSECURE",
    "TAXONOMY_WORKER_WORK_DIR",
    "TAXONOMY_WORKER_MAX_SEED",
    "TAXONOMY_WORKER_TEST_MODE",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def _valid() -> Settings:
    return Settings(git=GitSettings(token="ghp_token"))


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TAXONOMY_WORKER_GITHUB_TOKEN", "ghp_new")
    monkeypatch.setenv("TAXONOMY_WORKER_PRECHECK_ENDPOINT", "https://models.example.com/v1")
    monkeypatch.setenv("TAXONOMY_WORKER_TLS_INSECURE", "yes")
    monkeypatch.setenv("TAXONOMY_WORKER_WORK_DIR", "/srv/worker")
    monkeypatch.setenv("TAXONOMY_WORKER_MAX_SEED", "12")

    settings = Settings.from_env()

    assert settings.git.token == "ghp_new"
    assert settings.precheck.endpoint_url == "https://models.example.com/v1"
    assert settings.precheck.tls_insecure is True
    assert settings.sdg.tls_insecure is True
    assert settings.runtime.work_dir == Path("/srv/worker")
    assert settings.sdg.max_seed == 12


def test_from_env_accepts_legacy_variable_names(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ILWORKER_GITHUB_TOKEN", "ghp_legacy")
    monkeypatch.setenv("ILWORKER_GITHUB_USERNAME", "legacy-bot")
    monkeypatch.setenv("PRECHECK_ENDPOINT", "https://legacy.example.com/v1")

    settings = Settings.from_env()

    assert settings.git.token == "ghp_legacy"
    assert settings.git.username == "legacy-bot"
    assert settings.precheck.endpoint_url == "https://legacy.example.com/v1"
    assert settings.precheck.is_local is False


def test_from_env_defaults_to_local_endpoint() -> None:
    settings = Settings.from_env()

    assert settings.precheck.endpoint_url == LOCAL_ENDPOINT
    assert settings.precheck.is_local is True
    assert settings.queue.work_list == "generate"
    assert settings.queue.results_list == "results"


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TAXONOMY_WORKER_TEST_MODE", "maybe")

    with pytest.raises(ValueError, match="TAXONOMY_WORKER_TEST_MODE"):
        Settings.from_env()


def test_validate_requires_github_token() -> None:
    with pytest.raises(ValueError, match="GitHub token is required"):
        Settings().validate()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (
            replace(_valid(), runtime=RuntimeSettings(num_instructions=0)),
            "TAXONOMY_WORKER_NUM_INSTRUCTIONS",
        ),
        (
            replace(_valid(), runtime=RuntimeSettings(concurrency=0)),
            "TAXONOMY_WORKER_CONCURRENCY",
        ),
        (
            replace(_valid(), precheck=PrecheckSettings(endpoint_url="localhost:8000")),
            "Invalid precheck endpoint URL",
        ),
    ],
)
def test_validate_rejects_bad_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_accepts_defaults_with_token() -> None:
    _valid().validate()


def test_load_ilab_config_reads_relevant_sections(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "chat:\n"
        "  logs_dir: logs/chat\n"
        "  model: models/merlinite-7b-lab-Q4_K_M.gguf\n"
        "generate:\n"
        "  model: models/granite-7b-lab-Q4_K_M.gguf\n"
        "  taxonomy_path: taxonomy\n"
        "serve:\n"
        "  host_port: 127.0.0.1:8000\n",
        "utf-8",
    )

    config = load_ilab_config(path)

    assert config.chat_logs_dir == Path("logs/chat")
    assert config.model_name() == "granite-7b-lab-Q4_K_M.gguf"
    assert config.resolve_taxonomy_path(Path("/srv")) == Path("/srv/taxonomy")
    assert config.resolve_chat_logs_dir(Path("/srv")) == Path("/srv/logs/chat")


def test_load_ilab_config_missing_file_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="failed to read config file"):
        load_ilab_config(tmp_path / "missing.yaml")


def test_load_ilab_config_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", "utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        load_ilab_config(path)


def test_model_name_is_unknown_without_generate_model() -> None:
    assert IlabConfig().model_name() == "unknown"


def test_ilab_executable_prefers_virtualenv() -> None:
    assert RuntimeSettings().ilab_executable() == "ilab"
    assert RuntimeSettings(venv_dir=Path("/opt/venv")).ilab_executable() == "/opt/venv/bin/ilab"
