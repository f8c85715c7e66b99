import os
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG: dict = {
    "store": "sqlite",  # "sqlite" or "memory"
    "store_path": ".sentinel.db",
    "ai_timeout_seconds": 420,
    "github_timeout_seconds": 30,
    "max_patch_bytes": 100_000,
    "worker_concurrency": 4,
    "max_task_attempts": 5,
    "poll_interval_seconds": 2.0,
    "task_visibility_timeout_seconds": 900,
    "publish_delay_seconds": 0,
    "workspaces": [],  # seeded into the store at startup
    "repositories": [],
}

_LIST_KEYS = ("workspaces", "repositories")


def load_config(config_path: str = "sentinel.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load service configuration by merging (in order of precedence):
      1. Built-in defaults
      2. sentinel.yml in the current directory
      3. CLI argument overrides
    """
    config = {**DEFAULT_CONFIG, **{key: list(DEFAULT_CONFIG[key]) for key in _LIST_KEYS}}

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"{config_path} must contain a mapping at the top level")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Credentials come from the environment only, never from the file.
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["github_app_id"] = os.environ.get("GITHUB_APP_ID")
    config["github_app_private_key"] = _read_private_key()
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

    return config


def _read_private_key() -> Optional[str]:
    """GITHUB_APP_PRIVATE_KEY holds the PEM itself; GITHUB_APP_PRIVATE_KEY_PATH points at a file."""
    key = os.environ.get("GITHUB_APP_PRIVATE_KEY")
    if key:
        return key.replace("\\n", "\n")
    key_path = os.environ.get("GITHUB_APP_PRIVATE_KEY_PATH")
    if key_path:
        p = Path(key_path)
        if not p.exists():
            raise FileNotFoundError(f"GitHub App private key not found: {key_path}")
        return p.read_text()
    return None
