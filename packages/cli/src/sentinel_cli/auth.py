"""GitHub credential resolution.

A deployed worker authenticates as a GitHub App (GITHUB_APP_ID plus a
private key) and gets a token per installation. For local runs a plain
token is enough, and developers who already use the GitHub CLI don't need
to create one.

Resolution order (stops at first success):
  1. GitHub App credentials from the environment
  2. GITHUB_TOKEN environment variable
  3. `gh auth token` (GitHub CLI session — works after `gh auth login`)
"""

from __future__ import annotations

import logging
import subprocess

logger = logging.getLogger(__name__)


def _gh_cli_token() -> str | None:
    try:
        result = subprocess.run(
            ["gh", "auth", "token"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        logger.debug("gh CLI not available for token resolution")
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def resolve_github_credentials(config: dict) -> dict:
    """Return the github_* config keys to use; values may all be None.

    Never raises; commands that need GitHub access check the result and
    emit a UsageError.
    """
    app_id = config.get("github_app_id")
    private_key = config.get("github_app_private_key")
    if app_id and private_key:
        return {"github_app_id": app_id, "github_app_private_key": private_key, "github_token": None}

    token = config.get("github_token") or _gh_cli_token()
    if token and not config.get("github_token"):
        logger.debug("Resolved GitHub token via gh CLI session.")
    return {"github_app_id": None, "github_app_private_key": None, "github_token": token}
