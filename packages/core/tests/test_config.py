"""Tests for service configuration loading."""

import pytest

from sentinel_core.config import DEFAULT_CONFIG, load_config

_ENV = (
    "GITHUB_TOKEN",
    "GITHUB_APP_ID",
    "GITHUB_APP_PRIVATE_KEY",
    "GITHUB_APP_PRIVATE_KEY_PATH",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults_applied_when_no_config_file(tmp_path):
    config = load_config(config_path=str(tmp_path / "nonexistent.yml"))
    assert config["store"] == "sqlite"
    assert config["ai_timeout_seconds"] == 420
    assert config["worker_concurrency"] == 4
    assert config["repositories"] == []
    assert config["github_token"] is None


def test_defaults_are_not_shared_between_loads(tmp_path):
    config = load_config(config_path=str(tmp_path / "nonexistent.yml"))
    config["repositories"].append({"full_name": "acme/api"})
    assert DEFAULT_CONFIG["repositories"] == []


def test_config_file_overrides_defaults(tmp_path):
    cfg = tmp_path / "sentinel.yml"
    cfg.write_text("store: memory\nworker_concurrency: 8\n")
    config = load_config(config_path=str(cfg))
    assert config["store"] == "memory"
    assert config["worker_concurrency"] == 8
    assert config["max_task_attempts"] == 5


def test_repositories_loaded(tmp_path):
    cfg = tmp_path / "sentinel.yml"
    cfg.write_text(
        "repositories:\n"
        "  - workspace_id: ws1\n"
        "    installation_id: 7\n"
        "    github_id: 99\n"
        "    full_name: acme/api\n"
    )
    config = load_config(config_path=str(cfg))
    assert config["repositories"][0]["full_name"] == "acme/api"


def test_non_mapping_file_is_rejected(tmp_path):
    cfg = tmp_path / "sentinel.yml"
    cfg.write_text("- a\n- b\n")
    with pytest.raises(ValueError):
        load_config(config_path=str(cfg))


def test_cli_overrides_config_file(tmp_path):
    cfg = tmp_path / "sentinel.yml"
    cfg.write_text("worker_concurrency: 8\n")
    config = load_config(config_path=str(cfg), cli_overrides={"worker_concurrency": 2, "store": None})
    assert config["worker_concurrency"] == 2
    assert config["store"] == "sqlite"


def test_credentials_come_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_env")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
    cfg = tmp_path / "sentinel.yml"
    cfg.write_text("github_token: from-file\nopenai_api_key: from-file\n")

    config = load_config(config_path=str(cfg))

    assert config["github_token"] == "ghp_env"
    assert config["anthropic_api_key"] == "sk-ant"
    assert config["openai_api_key"] is None


def test_private_key_from_env_restores_newlines(tmp_path, monkeypatch):
    monkeypatch.setenv("GITHUB_APP_PRIVATE_KEY", "-----BEGIN-----\\nabc\\n-----END-----")
    config = load_config(config_path=str(tmp_path / "none.yml"))
    assert config["github_app_private_key"] == "-----BEGIN-----\nabc\n-----END-----"


def test_private_key_from_path(tmp_path, monkeypatch):
    key = tmp_path / "app.pem"
    key.write_text("PEM")
    monkeypatch.setenv("GITHUB_APP_PRIVATE_KEY_PATH", str(key))
    assert load_config(config_path=str(tmp_path / "none.yml"))["github_app_private_key"] == "PEM"


def test_missing_private_key_path_raises(tmp_path, monkeypatch):
    monkeypatch.setenv("GITHUB_APP_PRIVATE_KEY_PATH", str(tmp_path / "missing.pem"))
    with pytest.raises(FileNotFoundError):
        load_config(config_path=str(tmp_path / "none.yml"))
