"""RunStateMachine — drives one Run from queued to a terminal state.

    queued ──► in_progress ──► completed
       │              └──────► failed
       └──► skipped

Steps within a run are strictly sequential:

    claim → fetch PR context → resolve policy (frozen onto the run)
          → read guideline documents → ReviewEngine.review
          → persist findings + complete → enqueue publish

Failures are recorded on the Run, never raised to the worker: a Failed run
carries metadata.review_failure and no findings. Findings are written in
the same store transaction that marks the run completed, so anything that
observes "completed" can already read them.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from github import BadCredentialsException, GithubException, RateLimitExceededException

from sentinel_core.engine import Guideline, NoProviderKeyError, ReviewContext
from sentinel_core.gh.pull_request import split_full_name
from sentinel_core.providers.base import ResponseParseError
from sentinel_core.utils.context import truncate_bytes
from sentinel_store.models import Finding, RunStatus

if TYPE_CHECKING:
    from sentinel_core.engine import ReviewEngine
    from sentinel_core.gh.client import GitHubClient
    from sentinel_core.policy import PolicyResolver, ReviewPolicy
    from sentinel_core.results import ReviewFinding, ReviewResult
    from sentinel_store.base import BaseStore
    from sentinel_store.models import Run
    from sentinel_store.queue import BaseQueue

logger = logging.getLogger(__name__)

EXECUTE_REVIEW_TASK = "execute_review"
PUBLISH_ANNOTATIONS_TASK = "publish_annotations"

SKIP_NO_PROVIDER_KEYS = "no_provider_keys"

FAILURE_CONTEXT_FETCH = "context_fetch_failed"
FAILURE_REVIEW = "review_failed"

_MAX_ERROR_MESSAGE = 500

MAX_GUIDELINES = 5
MAX_GUIDELINE_BYTES = 51_200
_GUIDELINE_EXTENSIONS = (".md", ".mdx")

_ALLOWED_TRANSITIONS = {
    RunStatus.QUEUED: {RunStatus.IN_PROGRESS, RunStatus.SKIPPED},
    RunStatus.IN_PROGRESS: {RunStatus.COMPLETED, RunStatus.FAILED},
}


class InvalidTransitionError(RuntimeError):
    pass


def transition(run: Run, status: RunStatus) -> None:
    """Move run to status in place, enforcing the lifecycle."""
    if status not in _ALLOWED_TRANSITIONS.get(run.status, set()):
        raise InvalidTransitionError(f"Run {run.id}: cannot move from {run.status.value} to {status.value}")
    run.status = status


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_error(error: BaseException) -> str:
    message = re.sub(r"\s+", " ", str(error)).strip() or error.__class__.__name__
    if len(message) > _MAX_ERROR_MESSAGE:
        message = message[: _MAX_ERROR_MESSAGE - 3] + "..."
    return message


def error_type(error: BaseException) -> str:
    """Operator-facing label for the kind of failure."""
    if isinstance(error, ResponseParseError):
        return "Invalid Response"
    if isinstance(error, NoProviderKeyError):
        return "Missing Provider Key"
    if isinstance(error, RateLimitExceededException):
        return "Rate Limited"
    if isinstance(error, BadCredentialsException):
        return "Authentication Error"
    if isinstance(error, GithubException) and error.status == 403:
        return "Authorization Error"
    if isinstance(error, TimeoutError):
        return "Request Timeout"
    if isinstance(error, ConnectionError):
        return "Connection Error"

    name = error.__class__.__name__.lower()
    if "timeout" in name:
        return "Request Timeout"
    if "connection" in name:
        return "Connection Error"
    if "ratelimit" in name:
        return "Rate Limited"
    if "authentication" in name:
        return "Authentication Error"
    if "permission" in name:
        return "Authorization Error"
    return "Internal Error"


def to_finding_record(run_id: str, finding: ReviewFinding) -> Finding:
    metadata = {
        "impact": finding.impact,
        "current_code": finding.current_code,
        "replacement_code": finding.replacement_code,
        "explanation": finding.explanation,
        "references": list(finding.references),
    }
    return Finding(
        run_id=run_id,
        finding_hash=finding.finding_hash,
        severity=finding.severity.value,
        category=finding.category.value,
        title=finding.title,
        description=finding.description,
        confidence=finding.confidence,
        file_path=finding.file_path,
        line_start=finding.line_start,
        line_end=finding.line_end,
        metadata={k: v for k, v in metadata.items() if v not in (None, "", [])},
    )


class RunStateMachine:
    def __init__(
        self,
        store: BaseStore,
        github: GitHubClient,
        policy_resolver: PolicyResolver,
        engine: ReviewEngine,
        queue: BaseQueue,
        publish_delay_seconds: float = 0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._github = github
        self._resolver = policy_resolver
        self._engine = engine
        self._queue = queue
        self._publish_delay = publish_delay_seconds
        self._clock = clock

    def execute(self, run_id: str) -> Run | None:
        run = self._store.get_run(run_id)
        if run is None:
            logger.warning("Run %s not found; nothing to execute", run_id)
            return None
        if run.status is not RunStatus.QUEUED:
            logger.info("Run %s is %s, not queued; skipping duplicate delivery", run.id, run.status.value)
            return run

        if not self._engine.has_any_provider():
            return self._skip(run, SKIP_NO_PROVIDER_KEYS, "No AI provider API key is configured for this workspace.")

        started = self._clock()
        if not self._store.claim_run(run.id, started.isoformat()):
            logger.info("Run %s was claimed by another worker", run.id)
            return self._store.get_run(run.id)
        run = self._store.get_run(run.id)
        logger.info("Run %s started (%s)", run.id, run.external_reference)

        repository = self._store.get_repository(run.repository_id)
        try:
            if repository is None:
                raise LookupError(f"Repository {run.repository_id} not found")
            pull_request = self._fetch_context(run)
        except Exception as e:
            return self._fail(run, started, FAILURE_CONTEXT_FETCH, e)

        try:
            policy = self._resolver.resolve(repository, branch=pull_request.base_branch)
            run.policy_snapshot = policy.to_dict()
            self._store.update_run(run)
            guidelines = self._fetch_guidelines(run, policy, pull_request.base_branch)
        except Exception as e:
            return self._fail(run, started, FAILURE_REVIEW, e)

        context = ReviewContext(
            run=run, repository=repository, policy=policy, pull_request=pull_request, guidelines=guidelines
        )
        try:
            result = self._engine.review(context)
        except (ResponseParseError, NoProviderKeyError) as e:
            return self._fail(run, started, e.code, e)
        except Exception as e:
            return self._fail(run, started, FAILURE_REVIEW, e)

        try:
            completed = self._complete(run, started, result)
        except Exception as e:
            return self._fail(run, started, FAILURE_REVIEW, e)

        self._queue.enqueue(PUBLISH_ANNOTATIONS_TASK, {"run_id": completed.id}, delay_seconds=self._publish_delay)
        return completed

    # ------------------------------------------------------------------ #
    # Steps                                                                #
    # ------------------------------------------------------------------ #

    def _fetch_context(self, run: Run):
        name = split_full_name(run.metadata.get("repository_full_name"))
        if name is None:
            raise ValueError(f"Malformed repository name: {run.metadata.get('repository_full_name')!r}")
        number = run.metadata.get("pull_request_number")
        if isinstance(number, bool) or not isinstance(number, int):
            raise ValueError(f"Missing pull request number on run {run.id}")
        owner, repo = name
        return self._github.fetch_pull_request(run.metadata.get("installation_id"), owner, repo, number)

    def _fetch_guidelines(self, run: Run, policy: ReviewPolicy, ref: str) -> tuple[Guideline, ...]:
        """Read the configured guideline documents at ref.

        A guideline that cannot be read is logged and left out; it never
        fails the run.
        """
        if not policy.guidelines:
            return ()
        owner, repo = split_full_name(run.metadata.get("repository_full_name"))
        installation_id = run.metadata.get("installation_id")
        guidelines = []
        for entry in policy.guidelines:
            if len(guidelines) >= MAX_GUIDELINES:
                logger.info("Run %s: guideline limit of %d reached", run.id, MAX_GUIDELINES)
                break
            path = entry["path"]
            if not path.lower().endswith(_GUIDELINE_EXTENSIONS) or not policy.should_review_path(path):
                logger.debug("Run %s: skipping guideline %s", run.id, path)
                continue
            try:
                text = self._github.fetch_file(installation_id, owner, repo, path, ref)
            except Exception as e:
                logger.warning("Run %s: could not fetch guideline %s: %s", run.id, path, e)
                continue
            if text is None:
                logger.warning("Run %s: guideline %s not found at %s", run.id, path, ref)
                continue
            if len(text.encode("utf-8")) > MAX_GUIDELINE_BYTES:
                logger.info("Run %s: truncating guideline %s to %d bytes", run.id, path, MAX_GUIDELINE_BYTES)
                text = truncate_bytes(text, MAX_GUIDELINE_BYTES)
            guidelines.append(Guideline(path=path, content=text, description=entry.get("description")))
        return tuple(guidelines)

    def _complete(self, run: Run, started: datetime, result: ReviewResult) -> Run:
        findings = []
        seen = set()
        for f in result.findings:
            record = to_finding_record(run.id, f)
            if record.finding_hash in seen:
                continue
            seen.add(record.finding_hash)
            findings.append(record)

        # Work on a copy; run stays in progress if the write fails.
        completed = copy.deepcopy(run)
        transition(completed, RunStatus.COMPLETED)
        self._finish_timing(completed, started)
        completed.metrics = result.metrics.to_dict()
        completed.metadata["review_summary"] = result.summary.to_dict()
        self._store.complete_run(completed, findings)
        logger.info("Run %s completed with %d finding(s)", completed.id, len(findings))
        return completed

    def _fail(self, run: Run, started: datetime, code: str, error: Exception) -> Run:
        transition(run, RunStatus.FAILED)
        self._finish_timing(run, started)
        run.metadata["review_failure"] = {
            "code": code,
            "type": error_type(error),
            "message": sanitize_error(error),
        }
        self._store.update_run(run)
        logger.error("Run %s failed (%s): %s", run.id, code, sanitize_error(error))
        return run

    def _skip(self, run: Run, code: str, message: str) -> Run:
        transition(run, RunStatus.SKIPPED)
        run.completed_at = self._clock().isoformat()
        run.metadata["skip_reason_code"] = code
        run.metadata["skip_reason"] = message
        self._store.update_run(run)
        logger.info("Run %s skipped: %s", run.id, message)
        return run

    def _finish_timing(self, run: Run, started: datetime) -> None:
        completed = self._clock()
        run.completed_at = completed.isoformat()
        run.duration_seconds = round((completed - started).total_seconds(), 3)
