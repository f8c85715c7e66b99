"""Thin helpers over PyGithub pull-request objects.

These take PyGithub objects and return plain dataclasses so the rest of the
pipeline never handles lazy PyGithub attributes (which perform network I/O
on access).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from github import UnknownObjectException


@dataclass(frozen=True)
class PullRequestFile:
    filename: str
    status: str
    additions: int = 0
    deletions: int = 0
    patch: str | None = None


@dataclass(frozen=True)
class PullRequestContext:
    number: int
    title: str
    body: str
    base_branch: str
    head_branch: str
    head_sha: str
    author: str | None = None
    is_draft: bool = False
    labels: tuple[str, ...] = ()
    files: tuple[PullRequestFile, ...] = field(default_factory=tuple)

    @property
    def lines_added(self) -> int:
        return sum(f.additions for f in self.files)

    @property
    def lines_deleted(self) -> int:
        return sum(f.deletions for f in self.files)


def split_full_name(full_name) -> tuple[str, str] | None:
    """Split "owner/name"; None when the identifier is malformed."""
    if not isinstance(full_name, str):
        return None
    parts = full_name.split("/")
    if len(parts) != 2 or not all(parts):
        return None
    return parts[0], parts[1]


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def get_diff(pr):
    return pr.get_files()


def build_context(pr) -> PullRequestContext:
    """Materialize a pull request and its changed files."""
    files = tuple(
        PullRequestFile(
            filename=f.filename,
            status=f.status,
            additions=f.additions or 0,
            deletions=f.deletions or 0,
            patch=f.patch,
        )
        for f in get_diff(pr)
    )
    return PullRequestContext(
        number=pr.number,
        title=pr.title or "",
        body=pr.body or "",
        base_branch=pr.base.ref,
        head_branch=pr.head.ref,
        head_sha=pr.head.sha,
        author=pr.user.login if pr.user else None,
        is_draft=bool(pr.draft),
        labels=tuple(label.name for label in pr.labels),
        files=files,
    )


def get_file_text(repo, path: str, ref: str) -> str | None:
    """Return the decoded text of path at ref, or None if it does not exist."""
    try:
        contents = repo.get_contents(path, ref=ref)
    except UnknownObjectException:
        return None
    if isinstance(contents, list):
        # path is a directory
        return None
    return contents.decoded_content.decode("utf-8")
