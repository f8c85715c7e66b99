"""Assembly of pipeline services from CLI config.

Kept out of sentinel_core so the core never reads CLI configuration; every
collaborator is constructed here and injected.
"""

from __future__ import annotations

import logging

import click

from sentinel_core.engine import ReviewEngine
from sentinel_core.gh.client import GitHubClient
from sentinel_core.gh.pull_request import split_full_name
from sentinel_core.pipeline import RunStateMachine
from sentinel_core.policy import PolicyResolver
from sentinel_core.publisher import AnnotationPublisher
from sentinel_core.repo_config import CONFIG_PATH
from sentinel_core.worker import Worker, build_handlers
from sentinel_store.models import Repository, Workspace

logger = logging.getLogger(__name__)


def has_github_credentials(config: dict) -> bool:
    return bool(config.get("github_token") or (config.get("github_app_id") and config.get("github_app_private_key")))


def build_github_client(config: dict) -> GitHubClient:
    if not has_github_credentials(config):
        raise click.UsageError(
            "No GitHub credentials found. Set GITHUB_APP_ID and GITHUB_APP_PRIVATE_KEY, "
            "set GITHUB_TOKEN, or run `gh auth login`."
        )
    return GitHubClient(
        token=config.get("github_token"),
        app_id=config.get("github_app_id"),
        private_key=config.get("github_app_private_key"),
        timeout=config.get("github_timeout_seconds", 30),
    )


def build_policy_resolver(github: GitHubClient | None) -> PolicyResolver:
    if github is None:
        return PolicyResolver()

    def fetch_config(repository: Repository, ref: str) -> str | None:
        name = split_full_name(repository.full_name)
        if name is None:
            return None
        owner, repo = name
        return github.fetch_file(repository.installation_id, owner, repo, CONFIG_PATH, ref)

    return PolicyResolver(fetch_config)


def build_worker(config: dict, store, queue, concurrency: int | None = None) -> Worker:
    github = build_github_client(config)
    engine = ReviewEngine.from_config(config)
    if not engine.has_any_provider():
        logger.warning("No AI provider key configured; queued runs will be skipped.")
    state_machine = RunStateMachine(
        store=store,
        github=github,
        policy_resolver=build_policy_resolver(github),
        engine=engine,
        queue=queue,
        publish_delay_seconds=config.get("publish_delay_seconds", 0),
    )
    publisher = AnnotationPublisher(store, github)
    return Worker(
        queue,
        build_handlers(state_machine, publisher),
        concurrency=concurrency or config.get("worker_concurrency", 4),
        max_attempts=config.get("max_task_attempts", 5),
    )


def seed_registry(store, config: dict) -> None:
    """Upsert workspaces and repositories declared in sentinel.yml."""
    for entry in config.get("workspaces") or []:
        store.save_workspace(
            Workspace(
                id=str(entry["id"]),
                slug=entry.get("slug") or str(entry["id"]),
                name=entry.get("name", ""),
                monthly_run_limit=entry.get("monthly_run_limit"),
            )
        )
    for entry in config.get("repositories") or []:
        if split_full_name(entry.get("full_name")) is None:
            raise click.UsageError(f"Repository entry has invalid full_name: {entry.get('full_name')!r}")
        store.save_repository(
            Repository(
                id=str(entry.get("id") or entry["full_name"]),
                workspace_id=str(entry["workspace_id"]),
                installation_id=int(entry["installation_id"]),
                github_id=int(entry["github_id"]),
                full_name=entry["full_name"],
                default_branch=entry.get("default_branch", "main"),
                auto_review_enabled=bool(entry.get("auto_review_enabled", True)),
                review_rules=dict(entry.get("review_rules") or {}),
            )
        )
