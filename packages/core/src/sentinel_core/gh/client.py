"""GitHubClient — the narrow GitHub surface the pipeline depends on.

Every call is parameterized by installation id, owner, repo and number.
With GitHub App credentials the client authenticates per installation;
with a plain token (local runs, tests against a sandbox repo) the
installation id is ignored.

PyGithub's built-in urllib3 retry is switched off (retry=None) so that a
timeout fails the current pipeline step instead of being retried
in-process. Rate-limit responses are the one exception and go through
RateLimiter.
"""

from __future__ import annotations

import logging

from github import Auth, Github, GithubIntegration

from sentinel_core.gh.pull_request import PullRequestContext, build_context, get_file_text, get_pull
from sentinel_core.gh.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
_CHECK_ANNOTATIONS_PER_REQUEST = 50


def _review_comment(comment: dict) -> dict:
    """Shape a comment for the pull request review API (RIGHT side of the diff)."""
    shaped = {"path": comment["path"], "body": comment["body"], "line": comment["line"], "side": "RIGHT"}
    start_line = comment.get("start_line")
    if start_line is not None and start_line < comment["line"]:
        shaped.update(start_line=start_line, start_side="RIGHT")
    return shaped


class GitHubClient:
    def __init__(
        self,
        token: str | None = None,
        app_id: str | None = None,
        private_key: str | None = None,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        rate_limiter: RateLimiter | None = None,
    ):
        if not token and not (app_id and private_key):
            raise ValueError("GitHubClient needs either a token or GitHub App credentials (app_id + private_key).")
        self.timeout = timeout
        self._rate_limiter = rate_limiter or RateLimiter()
        self._integration = None
        self._token_client = None
        if app_id and private_key:
            self._integration = GithubIntegration(
                auth=Auth.AppAuth(int(app_id), private_key),
                timeout=timeout,
                retry=None,
            )
        else:
            self._token_client = Github(auth=Auth.Token(token), timeout=timeout, retry=None)

    # ------------------------------------------------------------------ #
    # Reads                                                                #
    # ------------------------------------------------------------------ #

    def fetch_pull_request(self, installation_id: int, owner: str, repo: str, number: int) -> PullRequestContext:
        """Return PR metadata and changed files (with patches)."""

        def _fetch():
            pr = get_pull(self._repo(installation_id, owner, repo), number)
            return build_context(pr)

        return self._rate_limiter.call(_fetch, operation=f"fetch {owner}/{repo}#{number}")

    def fetch_file(self, installation_id: int, owner: str, repo: str, path: str, ref: str) -> str | None:
        """Return the text of path at ref, or None when it does not exist."""
        return self._rate_limiter.call(
            lambda: get_file_text(self._repo(installation_id, owner, repo), path, ref),
            operation=f"fetch {owner}/{repo}:{path}@{ref}",
        )

    # ------------------------------------------------------------------ #
    # Writes                                                               #
    # ------------------------------------------------------------------ #

    def create_review_comment(
        self,
        installation_id: int,
        owner: str,
        repo: str,
        number: int,
        *,
        body: str,
        commit_sha: str,
        path: str,
        line: int,
        start_line: int | None = None,
    ) -> int:
        """Post one inline review comment on the RIGHT side of the diff; returns its id."""

        def _post():
            gh_repo = self._repo(installation_id, owner, repo)
            pr = get_pull(gh_repo, number)
            kwargs = {"line": line, "side": "RIGHT"}
            if start_line is not None and start_line < line:
                kwargs.update(start_line=start_line, start_side="RIGHT")
            comment = pr.create_review_comment(body, gh_repo.get_commit(commit_sha), path, **kwargs)
            return comment.id

        return self._rate_limiter.call(_post, operation=f"comment {owner}/{repo}#{number} {path}:{line}")

    def create_review(
        self,
        installation_id: int,
        owner: str,
        repo: str,
        number: int,
        *,
        body: str,
        commit_sha: str,
        comments: list[dict],
    ) -> int:
        """Submit one COMMENT review carrying body and every inline comment; returns the review id.

        Each comment is a dict with path, line, body and optionally start_line.
        """

        def _post():
            gh_repo = self._repo(installation_id, owner, repo)
            pr = get_pull(gh_repo, number)
            review = pr.create_review(
                commit=gh_repo.get_commit(commit_sha),
                body=body,
                event="COMMENT",
                comments=[_review_comment(c) for c in comments],
            )
            return review.id

        return self._rate_limiter.call(_post, operation=f"review {owner}/{repo}#{number}")

    def create_check_run(
        self,
        installation_id: int,
        owner: str,
        repo: str,
        *,
        name: str,
        head_sha: str,
        conclusion: str,
        title: str,
        summary: str,
        annotations: list[dict],
    ) -> int:
        """Create a completed check run on head_sha; returns its id.

        GitHub takes at most 50 annotations per request; the rest are
        appended by editing the same check run.
        """
        size = _CHECK_ANNOTATIONS_PER_REQUEST
        batches = [annotations[i : i + size] for i in range(0, len(annotations), size)] or [[]]
        operation = f"check run {owner}/{repo}@{head_sha[:7]}"

        def _create():
            return self._repo(installation_id, owner, repo).create_check_run(
                name=name,
                head_sha=head_sha,
                status="completed",
                conclusion=conclusion,
                output={"title": title, "summary": summary, "annotations": batches[0]},
            )

        check_run = self._rate_limiter.call(_create, operation=operation)
        for batch in batches[1:]:
            output = {"title": title, "summary": summary, "annotations": batch}
            self._rate_limiter.call(lambda output=output: check_run.edit(output=output), operation=operation)
        return check_run.id

    def create_issue_comment(self, installation_id: int, owner: str, repo: str, number: int, body: str) -> int:
        """Post a top-level comment on a PR or issue; returns its id."""

        def _post():
            issue = self._repo(installation_id, owner, repo).get_issue(number)
            return issue.create_comment(body).id

        return self._rate_limiter.call(_post, operation=f"issue comment {owner}/{repo}#{number}")

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _github(self, installation_id: int) -> Github:
        if self._integration is not None:
            return self._integration.get_github_for_installation(installation_id)
        return self._token_client

    def _repo(self, installation_id: int, owner: str, repo: str):
        return self._github(installation_id).get_repo(f"{owner}/{repo}")
