"""Diff context assembly for the review prompt.

Patches are added file by file until the byte budget is spent. Each file's
patch is truncated to whatever budget remains, and once nothing remains the
rest of the files are listed by name only so the model still knows they
changed. Budgets are counted in UTF-8 bytes, not characters, since that is
what drives request size.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sentinel_core.utils.code import is_code_file, is_excluded, matches_any

if TYPE_CHECKING:
    from sentinel_core.gh.pull_request import PullRequestFile

logger = logging.getLogger(__name__)

DEFAULT_MAX_PATCH_BYTES = 100_000

_TRUNCATION_MARKER = "\n... [patch truncated]"


@dataclass
class DiffContext:
    sections: list[str] = field(default_factory=list)
    reviewed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    truncated: list[str] = field(default_factory=list)
    sensitive: list[str] = field(default_factory=list)

    def render(self) -> str:
        rendered = "\n\n".join(self.sections)
        if self.sensitive:
            rendered += "\n\nSensitive files (review with extra care): " + ", ".join(self.sensitive)
        if self.skipped:
            rendered += "\n\nNot included (filtered by path, non-code or over budget): " + ", ".join(self.skipped)
        return rendered


def truncate_bytes(text: str, max_bytes: int) -> str:
    """Cut text to at most max_bytes of UTF-8 without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def build_diff_context(
    files: list[PullRequestFile],
    ignored_paths=(),
    max_bytes: int = DEFAULT_MAX_PATCH_BYTES,
    *,
    included_paths=(),
    sensitive_paths=(),
) -> DiffContext:
    """Render changed files into prompt sections.

    When included_paths is non-empty only matching files are reviewed.
    Files matching sensitive_paths are flagged in their section header.
    """
    context = DiffContext()
    remaining = max_bytes

    for f in files:
        if is_excluded(f.filename, ignored_paths) or not is_code_file(f.filename) or not f.patch:
            context.skipped.append(f.filename)
            continue
        if included_paths and not matches_any(f.filename, included_paths):
            context.skipped.append(f.filename)
            continue
        if remaining <= 0:
            context.skipped.append(f.filename)
            continue

        patch = f.patch
        if len(patch.encode("utf-8")) > remaining:
            patch = truncate_bytes(patch, remaining) + _TRUNCATION_MARKER
            context.truncated.append(f.filename)
        remaining -= len(patch.encode("utf-8"))

        header = f"### {f.filename} ({f.status}, +{f.additions}/-{f.deletions})"
        if matches_any(f.filename, sensitive_paths):
            header += " [sensitive]"
            context.sensitive.append(f.filename)
        context.sections.append(f"{header}\n```diff\n{patch}\n```")
        context.reviewed.append(f.filename)

    if context.truncated:
        logger.info("Patch budget of %d bytes exhausted; truncated %s", max_bytes, ", ".join(context.truncated))
    return context
