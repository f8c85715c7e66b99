"""Trigger rules from the `triggers` section of the in-repo config."""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass

from sentinel_core.repo_config import TriggersConfig


@dataclass(frozen=True)
class TriggerDecision:
    should_review: bool
    reason: str | None = None


def _matches_any(value: str, patterns: list[str]) -> str | None:
    for pattern in patterns:
        if fnmatch.fnmatchcase(value, pattern):
            return pattern
    return None


def evaluate_triggers(
    triggers: TriggersConfig,
    *,
    base_branch: str,
    head_branch: str,
    author: str | None,
    labels: list[str],
) -> TriggerDecision:
    """Decide whether a pull request should be reviewed under these trigger rules.

    An empty target_branches list means every target branch is reviewed.
    """
    if triggers.target_branches and _matches_any(base_branch, triggers.target_branches) is None:
        return TriggerDecision(False, f"Target branch '{base_branch}' is not configured for review.")

    pattern = _matches_any(head_branch, triggers.skip_source_branches)
    if pattern is not None:
        return TriggerDecision(False, f"Source branch '{head_branch}' matches skip pattern '{pattern}'.")

    for label in labels:
        pattern = _matches_any(label, triggers.skip_labels)
        if pattern is not None:
            return TriggerDecision(False, f"Label '{label}' matches skip pattern '{pattern}'.")

    if author:
        pattern = _matches_any(author, triggers.skip_authors)
        if pattern is not None:
            return TriggerDecision(False, f"Author '{author}' matches skip pattern '{pattern}'.")

    return TriggerDecision(True)
