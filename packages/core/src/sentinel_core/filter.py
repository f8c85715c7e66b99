"""FindingFilter — which findings are worth an inline comment.

Under a tight comment budget the most severe findings must always survive
truncation, whatever order the model emitted them in. Sorting is stable,
so ties keep the model's order.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from sentinel_core.results import Severity

if TYPE_CHECKING:
    from sentinel_core.policy import ReviewPolicy
    from sentinel_store.models import Finding


def _rank(finding: Finding) -> int:
    return Severity.parse(finding.severity).rank


class FindingFilter:
    def select(
        self,
        findings: Iterable[Finding],
        policy: ReviewPolicy,
        *,
        min_severity: Severity | None = None,
        max_comments: int | None = None,
    ) -> list[Finding]:
        """Return the findings eligible for publication, most severe first.

        min_severity and max_comments default to the policy's comment
        threshold and max inline comments.
        """
        threshold = (min_severity or policy.comment_severity_threshold).rank
        limit = policy.max_inline_comments if max_comments is None else max_comments
        if limit <= 0:
            return []

        # Anchoring happens before truncation: a finding needs both a path and a line.
        eligible = [f for f in findings if _rank(f) >= threshold and f.file_path and f.line_start is not None]
        eligible.sort(key=_rank, reverse=True)
        return eligible[:limit]
