"""Shared fixtures for sentinel-core tests."""

import pytest

from sentinel_core.gh.pull_request import PullRequestContext, PullRequestFile
from sentinel_store.memory import MemoryStore
from sentinel_store.models import Repository, Run, Workspace
from sentinel_store.queue import MemoryQueue

HEAD_SHA = "a" * 40


@pytest.fixture
def repository():
    return Repository(
        id="repo1",
        workspace_id="ws1",
        installation_id=7,
        github_id=99,
        full_name="acme/api",
    )


@pytest.fixture
def store(repository):
    backend = MemoryStore()
    backend.save_workspace(Workspace(id="ws1", slug="acme"))
    backend.save_repository(repository)
    return backend


@pytest.fixture
def queue():
    return MemoryQueue()


@pytest.fixture
def pull_request():
    return PullRequestContext(
        number=12,
        title="Add caching layer",
        body="Caches user lookups.",
        base_branch="main",
        head_branch="feature/cache",
        head_sha=HEAD_SHA,
        author="octocat",
        files=(
            PullRequestFile(
                filename="app/cache.py",
                status="added",
                additions=30,
                deletions=0,
                patch="@@ -0,0 +1,2 @@\n+import redis\n+client = redis.Redis()",
            ),
            PullRequestFile(filename="app/db.py", status="modified", additions=4, deletions=2, patch="@@ -1 +1 @@\n-a\n+b"),
        ),
    )


@pytest.fixture
def make_run(store):
    """Create and persist a queued Run for PR #12 of acme/api."""

    def _make(pr_number=12, sha=HEAD_SHA, **metadata):
        meta = {
            "repository_full_name": "acme/api",
            "pull_request_number": pr_number,
            "installation_id": 7,
            "base_branch": "main",
            "head_sha": sha,
        }
        meta.update(metadata)
        run, _ = store.create_run(
            Run(
                workspace_id="ws1",
                repository_id="repo1",
                external_reference=f"github:pull_request:{pr_number}:{sha}",
                metadata=meta,
            )
        )
        return run

    return _make
