"""AnnotationPublisher — posts a completed run's findings back to GitHub.

Publishing runs as its own queued task and must survive redelivery:

  - If any Annotation already exists for the run, publishing is a no-op
    (nothing is posted, nothing is fetched from GitHub).
  - Each Annotation is stored the moment its comment is created, so a crash
    halfway through still leaves the guard in place for the posted items.
  - A failure on one finding is recorded and the loop moves on.

How findings reach GitHub follows the snapshot's `annotations` settings:

    style=review   inline review comments, or one review holding them all (grouped)
    style=comment  PR conversation comments, one per finding or one for all (grouped)
    style=check    one check run on the head commit with a line annotation per finding

The run's stored policy snapshot is used as-is; the policy is never
re-resolved here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sentinel_core.filter import FindingFilter
from sentinel_core.gh.pull_request import split_full_name
from sentinel_core.policy import ReviewPolicy
from sentinel_core.repo_config import AnnotationStyle
from sentinel_core.results import FindingCategory, RiskLevel, Severity
from sentinel_store.models import Annotation, RunStatus

if TYPE_CHECKING:
    from sentinel_core.gh.client import GitHubClient
    from sentinel_store.base import BaseStore
    from sentinel_store.models import Finding, Run

logger = logging.getLogger(__name__)

CHECK_RUN_NAME = "Sentinel Code Review"

ANNOTATION_INLINE = "inline"
ANNOTATION_REVIEW = "review"
ANNOTATION_COMMENT = "comment"
ANNOTATION_CHECK = "check"

_SEVERITY_BADGE = {
    Severity.CRITICAL: ":red_circle: **Critical**",
    Severity.HIGH: ":orange_circle: **High**",
    Severity.MEDIUM: ":yellow_circle: **Medium**",
    Severity.LOW: ":large_blue_circle: **Low**",
    Severity.INFO: ":white_circle: **Info**",
}

_RISK_BADGE = {
    RiskLevel.CRITICAL: ":red_circle: Critical",
    RiskLevel.HIGH: ":orange_circle: High",
    RiskLevel.MEDIUM: ":yellow_circle: Medium",
    RiskLevel.LOW: ":green_circle: Low",
}

_CHECK_LEVEL = {
    Severity.CRITICAL: "failure",
    Severity.HIGH: "failure",
    Severity.MEDIUM: "warning",
    Severity.LOW: "notice",
    Severity.INFO: "notice",
}

_MAX_ERROR_LENGTH = 300


def format_finding_comment(finding: Finding, include_suggestions: bool = True) -> str:
    """Render the markdown body of one inline review comment."""
    severity = Severity.parse(finding.severity)
    category = FindingCategory.parse(finding.category)
    meta = finding.metadata or {}

    parts = [f"{_SEVERITY_BADGE[severity]} | `{category.value}`", "", f"### {finding.title}", "", finding.description]

    replacement = meta.get("replacement_code")
    if include_suggestions and replacement:
        parts += ["", "```suggestion", replacement.rstrip("\n"), "```"]
        if meta.get("explanation"):
            parts += ["", f"**Why:** {meta['explanation']}"]

    if meta.get("impact"):
        parts += ["", f"_Impact: {meta['impact']}_"]

    parts += ["", f"`Confidence: {round(finding.confidence * 100)}%`"]
    return "\n".join(parts)


def format_summary_comment(summary: dict, findings_count: int) -> str:
    """Render the top-level review summary comment."""
    risk = RiskLevel.parse(summary.get("risk_level"))
    lines = [
        "## Sentinel Review Summary",
        "",
        f"**Risk Level:** {_RISK_BADGE[risk]}",
        "",
        summary.get("overview") or "Review completed.",
        "",
        f"**Findings:** {findings_count}",
    ]
    recommendations = [r for r in summary.get("recommendations") or [] if isinstance(r, str)]
    if recommendations:
        lines += ["", "### Recommendations", ""]
        lines += [f"- {r}" for r in recommendations]
    return "\n".join(lines)


def format_file_comment(finding: Finding, include_suggestions: bool = True) -> str:
    """A finding posted in the PR conversation rather than on the diff."""
    location = f"**File:** `{finding.file_path}` (line {finding.line_start})"
    return f"{location}\n\n{format_finding_comment(finding, include_suggestions)}"


def format_grouped_findings(findings: list[Finding], include_suggestions: bool = True) -> str:
    """All findings in a single conversation comment."""
    sections = ["## Detailed Findings"]
    for finding in findings:
        sections.append(
            f"### `{finding.file_path}` (line {finding.line_start})\n\n"
            f"{format_finding_comment(finding, include_suggestions)}\n\n---"
        )
    return "\n\n".join(sections)


def _anchor(finding: Finding) -> tuple[int, int | None]:
    """(line, start_line); start_line is set only for multi-line findings."""
    if finding.line_end is not None and finding.line_end > finding.line_start:
        return finding.line_end, finding.line_start
    return finding.line_start, None


def _check_annotation(finding: Finding) -> dict:
    line, start_line = _anchor(finding)
    return {
        "path": finding.file_path,
        "start_line": start_line if start_line is not None else line,
        "end_line": line,
        "annotation_level": _CHECK_LEVEL[Severity.parse(finding.severity)],
        "title": finding.title,
        "message": finding.description or finding.title,
    }


def _error(finding_id: str | None, error: Exception) -> dict:
    return {"finding_id": finding_id, "error": str(error)[:_MAX_ERROR_LENGTH]}


@dataclass(frozen=True)
class _Target:
    installation_id: int | None
    owner: str
    repo: str
    number: int
    head_sha: str | None


class AnnotationPublisher:
    def __init__(self, store: BaseStore, github: GitHubClient, finding_filter: FindingFilter | None = None):
        self._store = store
        self._github = github
        self._filter = finding_filter or FindingFilter()

    def publish(self, run_id: str) -> int:
        """Post eligible findings for a run; returns the number of Annotations created."""
        run = self._store.get_run(run_id)
        if run is None:
            logger.warning("Run %s not found; nothing to publish", run_id)
            return 0
        if run.status is not RunStatus.COMPLETED:
            logger.info("Run %s is %s; only completed runs are published", run.id, run.status.value)
            return 0

        pr_number = run.metadata.get("pull_request_number")
        if isinstance(pr_number, bool) or not isinstance(pr_number, int):
            logger.warning("Run %s has no pull request number; skipping publish", run.id)
            return 0

        name = split_full_name(run.metadata.get("repository_full_name"))
        if name is None:
            logger.warning(
                "Run %s has malformed repository name %r; skipping publish",
                run.id,
                run.metadata.get("repository_full_name"),
            )
            return 0

        if self._store.has_annotations(run.id):
            logger.info("Run %s already has annotations; not posting again", run.id)
            return 0

        policy = ReviewPolicy.from_dict(run.policy_snapshot or {})
        findings = self._store.list_findings(run.id)
        eligible = self._filter.select(findings, policy, min_severity=policy.annotation_post_threshold)

        target = _Target(
            installation_id=run.metadata.get("installation_id"),
            owner=name[0],
            repo=name[1],
            number=pr_number,
            head_sha=run.metadata.get("head_sha"),
        )
        summary = format_summary_comment(run.metadata.get("review_summary") or {}, len(findings))
        style = policy.annotation_style
        patch: dict = {}
        errors: list[dict] = []

        if style is AnnotationStyle.CHECK:
            created = self._publish_check_run(run, target, eligible, summary, patch, errors)
        elif policy.annotations_grouped and style is AnnotationStyle.REVIEW:
            created = self._publish_grouped_review(run, target, eligible, policy, summary, patch, errors)
        elif policy.annotations_grouped:
            self._post_summary(run, target, summary, patch, errors)
            created = self._publish_grouped_comment(target, eligible, policy, errors)
        else:
            created = self._publish_each(target, eligible, policy, style, errors)
            self._post_summary(run, target, summary, patch, errors)

        if errors:
            logger.error("Run %s: %d of %d annotation(s) failed to post", run.id, len(errors), len(eligible))
            patch["annotation_errors"] = errors
        if patch:
            self._store.merge_run_metadata(run.id, patch)
        logger.info(
            "Run %s: posted %d annotation(s) to %s/%s#%d as %s",
            run.id,
            created,
            target.owner,
            target.repo,
            target.number,
            style.value,
        )
        return created

    # ------------------------------------------------------------------ #
    # Styles                                                               #
    # ------------------------------------------------------------------ #

    def _publish_each(
        self, target: _Target, eligible: list[Finding], policy: ReviewPolicy, style: AnnotationStyle, errors: list
    ) -> int:
        created = 0
        for finding in eligible:
            try:
                if style is AnnotationStyle.COMMENT:
                    external_id = self._github.create_issue_comment(
                        target.installation_id,
                        target.owner,
                        target.repo,
                        target.number,
                        format_file_comment(finding, policy.include_suggestions),
                    )
                    kind = ANNOTATION_COMMENT
                else:
                    line, start_line = _anchor(finding)
                    external_id = self._github.create_review_comment(
                        target.installation_id,
                        target.owner,
                        target.repo,
                        target.number,
                        body=format_finding_comment(finding, policy.include_suggestions),
                        commit_sha=target.head_sha,
                        path=finding.file_path,
                        line=line,
                        start_line=start_line,
                    )
                    kind = ANNOTATION_INLINE
            except Exception as e:
                logger.warning(
                    "Failed to post finding %s on %s/%s#%d: %s", finding.id, target.owner, target.repo, target.number, e
                )
                errors.append(_error(finding.id, e))
                continue
            self._store.add_annotation(Annotation(finding_id=finding.id, external_id=str(external_id), type=kind))
            created += 1
        return created

    def _publish_grouped_review(
        self,
        run: Run,
        target: _Target,
        eligible: list[Finding],
        policy: ReviewPolicy,
        summary: str,
        patch: dict,
        errors: list,
    ) -> int:
        """One review whose body is the summary and whose comments are all findings."""
        if not eligible and run.metadata.get("summary_comment_id") is not None:
            return 0
        comments = []
        for finding in eligible:
            line, start_line = _anchor(finding)
            comments.append(
                {
                    "path": finding.file_path,
                    "line": line,
                    "start_line": start_line,
                    "body": format_finding_comment(finding, policy.include_suggestions),
                }
            )
        try:
            review_id = self._github.create_review(
                target.installation_id,
                target.owner,
                target.repo,
                target.number,
                body=summary,
                commit_sha=target.head_sha,
                comments=comments,
            )
        except Exception as e:
            logger.warning("Failed to post review on %s/%s#%d: %s", target.owner, target.repo, target.number, e)
            errors.append(_error(None, e))
            return 0
        patch["summary_comment_id"] = review_id
        return self._record_all(eligible, review_id, ANNOTATION_REVIEW)

    def _publish_grouped_comment(
        self, target: _Target, eligible: list[Finding], policy: ReviewPolicy, errors: list
    ) -> int:
        if not eligible:
            return 0
        try:
            comment_id = self._github.create_issue_comment(
                target.installation_id,
                target.owner,
                target.repo,
                target.number,
                format_grouped_findings(eligible, policy.include_suggestions),
            )
        except Exception as e:
            logger.warning("Failed to post findings on %s/%s#%d: %s", target.owner, target.repo, target.number, e)
            errors.append(_error(None, e))
            return 0
        return self._record_all(eligible, comment_id, ANNOTATION_COMMENT)

    def _publish_check_run(
        self, run: Run, target: _Target, eligible: list[Finding], summary: str, patch: dict, errors: list
    ) -> int:
        """A check run carries both the summary and the findings; no PR comment is posted."""
        if not target.head_sha:
            logger.warning("Run %s has no head SHA; cannot create a check run", run.id)
            errors.append({"finding_id": None, "error": "Cannot create a check run without a head SHA."})
            return 0
        try:
            check_run_id = self._github.create_check_run(
                target.installation_id,
                target.owner,
                target.repo,
                name=CHECK_RUN_NAME,
                head_sha=target.head_sha,
                conclusion="neutral" if eligible else "success",
                title=f"{len(eligible)} finding(s)",
                summary=summary,
                annotations=[_check_annotation(f) for f in eligible],
            )
        except Exception as e:
            logger.warning("Failed to create check run on %s/%s@%s: %s", target.owner, target.repo, target.head_sha, e)
            errors.append(_error(None, e))
            return 0
        patch["check_run_id"] = check_run_id
        return self._record_all(eligible, check_run_id, ANNOTATION_CHECK)

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _record_all(self, findings: list[Finding], external_id, kind: str) -> int:
        for finding in findings:
            self._store.add_annotation(Annotation(finding_id=finding.id, external_id=str(external_id), type=kind))
        return len(findings)

    def _post_summary(self, run: Run, target: _Target, summary: str, patch: dict, errors: list) -> None:
        if run.metadata.get("summary_comment_id") is not None:
            return
        try:
            comment_id = self._github.create_issue_comment(
                target.installation_id, target.owner, target.repo, target.number, summary
            )
        except Exception as e:
            logger.warning("Failed to post review summary on %s/%s#%d: %s", target.owner, target.repo, target.number, e)
            errors.append(_error(None, e))
            return
        patch["summary_comment_id"] = comment_id
