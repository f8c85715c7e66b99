"""Pull-request webhook ingestion.

Turns a GitHub `pull_request` event into (at most) one queued Run:

  - opened / synchronize / reopened → create a Run and enqueue execution
  - metadata-only actions → refresh the latest Run's metadata, no new Run
  - anything else → ignored

Webhooks are delivered at least once. The Run's external_reference
(`github:pull_request:{number}:{head_sha}`) is unique per workspace, so a
redelivered event finds the existing Run and enqueues nothing.

Precondition failures are returned as IngestResult(allowed=False, reason=...)
rather than raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sentinel_core.pipeline import EXECUTE_REVIEW_TASK
from sentinel_core.triggers import evaluate_triggers
from sentinel_store.models import Run, RunStatus

if TYPE_CHECKING:
    from sentinel_core.policy import PolicyResolver
    from sentinel_store.base import BaseStore
    from sentinel_store.models import Repository, Workspace
    from sentinel_store.queue import BaseQueue

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = frozenset({"opened", "synchronize", "reopened"})
METADATA_ACTIONS = frozenset(
    {
        "labeled",
        "unlabeled",
        "assigned",
        "unassigned",
        "review_requested",
        "review_request_removed",
        "converted_to_draft",
        "ready_for_review",
    }
)

SKIP_PLAN_LIMIT = "plan_limit_reached"
SKIP_TRIGGER_RULES = "trigger_rules"


class WebhookPayloadError(ValueError):
    """The webhook payload is missing fields the pipeline needs."""


def external_reference(pr_number: int, head_sha: str) -> str:
    return f"github:pull_request:{pr_number}:{head_sha}"


def reference_prefix(pr_number: int) -> str:
    return f"github:pull_request:{pr_number}:"


@dataclass(frozen=True)
class PullRequestEvent:
    action: str
    installation_id: int
    repository_github_id: int
    repository_full_name: str
    number: int
    title: str
    body: str
    base_branch: str
    head_branch: str
    head_sha: str
    sender_login: str | None
    author_login: str | None
    is_draft: bool
    labels: tuple[str, ...]
    assignees: tuple[str, ...]
    reviewers: tuple[str, ...]

    def pull_request_metadata(self) -> dict:
        """Fields refreshed by metadata-only actions."""
        return {
            "pull_request_title": self.title,
            "pull_request_body": self.body,
            "author": {"login": self.author_login},
            "is_draft": self.is_draft,
            "labels": list(self.labels),
            "assignees": list(self.assignees),
            "reviewers": list(self.reviewers),
        }

    def run_metadata(self) -> dict:
        return {
            "repository_full_name": self.repository_full_name,
            "pull_request_number": self.number,
            "base_branch": self.base_branch,
            "head_branch": self.head_branch,
            "head_sha": self.head_sha,
            "sender_login": self.sender_login,
            "action": self.action,
            "installation_id": self.installation_id,
            **self.pull_request_metadata(),
        }


def _logins(items) -> tuple[str, ...]:
    return tuple(item["login"] for item in items or [] if isinstance(item, dict) and item.get("login"))


def parse_pull_request_payload(payload: dict) -> PullRequestEvent:
    try:
        pr = payload["pull_request"]
        repository = payload["repository"]
        return PullRequestEvent(
            action=payload["action"],
            installation_id=int(payload["installation"]["id"]),
            repository_github_id=int(repository["id"]),
            repository_full_name=repository["full_name"],
            number=int(pr["number"]),
            title=pr.get("title") or "",
            body=pr.get("body") or "",
            base_branch=pr["base"]["ref"],
            head_branch=pr["head"]["ref"],
            head_sha=pr["head"]["sha"],
            sender_login=(payload.get("sender") or {}).get("login"),
            author_login=(pr.get("user") or {}).get("login"),
            is_draft=bool(pr.get("draft", False)),
            labels=tuple(label["name"] for label in pr.get("labels") or [] if isinstance(label, dict)),
            assignees=_logins(pr.get("assignees")),
            reviewers=_logins(pr.get("requested_reviewers")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise WebhookPayloadError(f"Malformed pull_request payload: {e!r}") from e


@dataclass(frozen=True)
class IngestResult:
    allowed: bool
    reason: str | None = None
    run: Run | None = None
    created: bool = False


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class WebhookIngestor:
    def __init__(
        self,
        store: BaseStore,
        queue: BaseQueue,
        policy_resolver: PolicyResolver | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._queue = queue
        self._resolver = policy_resolver
        self._clock = clock

    def handle_pull_request(self, payload: dict) -> IngestResult:
        action = payload.get("action")
        if action not in REVIEW_ACTIONS and action not in METADATA_ACTIONS:
            logger.debug("Ignoring pull_request action %r", action)
            return IngestResult(False, f"Action '{action}' does not trigger a review.")

        event = parse_pull_request_payload(payload)
        repository = self._store.find_repository(event.installation_id, event.repository_github_id)
        if repository is None:
            logger.warning("Webhook for unknown repository %s", event.repository_full_name)
            return IngestResult(False, f"Repository {event.repository_full_name} is not connected.")

        if action in METADATA_ACTIONS:
            return self._sync_metadata(repository, event)

        if not repository.auto_review_enabled:
            logger.info("Auto review disabled for %s; no run created", repository.full_name)
            return IngestResult(False, "Auto reviews are disabled for this repository.")

        skip_code, skip_reason = self._skip_reason(repository, event)
        run = Run(
            workspace_id=repository.workspace_id,
            repository_id=repository.id,
            external_reference=external_reference(event.number, event.head_sha),
            status=RunStatus.SKIPPED if skip_code else RunStatus.QUEUED,
            metadata=event.run_metadata(),
        )
        if skip_code:
            run.completed_at = self._clock().isoformat()
            run.metadata["skip_reason_code"] = skip_code
            run.metadata["skip_reason"] = skip_reason

        run, created = self._store.create_run(run)
        if not created:
            logger.info("Duplicate delivery for %s; run %s already exists", run.external_reference, run.id)
            return IngestResult(True, "Run already exists for this commit.", run, created=False)

        if skip_code:
            logger.info("Run %s skipped: %s", run.id, skip_reason)
            return IngestResult(False, skip_reason, run, created=True)

        self._queue.enqueue(EXECUTE_REVIEW_TASK, {"run_id": run.id})
        logger.info("Queued run %s for %s#%d", run.id, repository.full_name, event.number)
        return IngestResult(True, None, run, created=True)

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _sync_metadata(self, repository: Repository, event: PullRequestEvent) -> IngestResult:
        run = self._store.find_latest_run(repository.id, reference_prefix(event.number))
        if run is None:
            return IngestResult(False, f"No run exists yet for pull request #{event.number}.")
        self._store.merge_run_metadata(run.id, event.pull_request_metadata())
        logger.debug("Synced %s metadata onto run %s", event.action, run.id)
        return IngestResult(True, None, self._store.get_run(run.id), created=False)

    def _skip_reason(self, repository: Repository, event: PullRequestEvent) -> tuple[str | None, str | None]:
        workspace = self._store.get_workspace(repository.workspace_id)
        limit_reason = self._plan_limit_reason(workspace)
        if limit_reason:
            return SKIP_PLAN_LIMIT, limit_reason

        if self._resolver is not None:
            config = self._resolver.load_repo_config(repository, event.base_branch)
            if config is not None:
                decision = evaluate_triggers(
                    config.triggers,
                    base_branch=event.base_branch,
                    head_branch=event.head_branch,
                    author=event.author_login,
                    labels=list(event.labels),
                )
                if not decision.should_review:
                    return SKIP_TRIGGER_RULES, decision.reason
        return None, None

    def _plan_limit_reason(self, workspace: Workspace | None) -> str | None:
        if workspace is None or workspace.monthly_run_limit is None:
            return None
        since = _month_start(self._clock()).isoformat()
        used = self._store.count_runs_since(workspace.id, since)
        if used >= workspace.monthly_run_limit:
            return f"Monthly review limit of {workspace.monthly_run_limit} runs reached for this workspace."
        return None
