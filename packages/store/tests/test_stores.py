"""Tests for sentinel-store backends.

Every behaviour is checked against both MemoryStore and SQLiteStore so the
two backends stay interchangeable.
"""

from __future__ import annotations

import pytest

from sentinel_store.memory import MemoryStore
from sentinel_store.models import Annotation, Finding, Repository, Run, RunStatus, Workspace
from sentinel_store.sqlite import SQLiteStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        backend = MemoryStore()
    else:
        backend = SQLiteStore(db_path=str(tmp_path / "test.db"))
    backend.save_workspace(Workspace(id="ws1", slug="acme", monthly_run_limit=10))
    backend.save_repository(
        Repository(
            id="repo1",
            workspace_id="ws1",
            installation_id=7,
            github_id=99,
            full_name="acme/api",
            review_rules={"tone": "direct"},
        )
    )
    yield backend
    backend.close()


def _make_run(pr_number=1, sha="a" * 40, **kwargs):
    return Run(
        workspace_id="ws1",
        repository_id="repo1",
        external_reference=f"github:pull_request:{pr_number}:{sha}",
        metadata={"pull_request_number": pr_number},
        **kwargs,
    )


def _make_finding(run_id, finding_hash="h1", severity="high", title="SQL injection"):
    return Finding(
        run_id=run_id,
        finding_hash=finding_hash,
        severity=severity,
        category="security",
        title=title,
        description="User input reaches the query unescaped.",
        confidence=0.9,
        file_path="app/db.py",
        line_start=10,
        line_end=12,
        metadata={"impact": "Data exfiltration"},
    )


# ---------------------------------------------------------------------------
# Workspaces and repositories
# ---------------------------------------------------------------------------


class TestRepositories:
    def test_get_workspace(self, store):
        workspace = store.get_workspace("ws1")
        assert workspace.slug == "acme"
        assert workspace.monthly_run_limit == 10

    def test_missing_workspace_returns_none(self, store):
        assert store.get_workspace("nope") is None

    def test_find_repository_by_github_identity(self, store):
        repository = store.find_repository(7, 99)
        assert repository.full_name == "acme/api"
        assert repository.review_rules == {"tone": "direct"}
        assert repository.auto_review_enabled is True

    def test_find_repository_wrong_installation(self, store):
        assert store.find_repository(8, 99) is None

    def test_find_repository_by_name(self, store):
        assert store.find_repository_by_name("acme/api").id == "repo1"
        assert store.find_repository_by_name("acme/web") is None


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestRuns:
    def test_create_run(self, store):
        run, created = store.create_run(_make_run())
        assert created is True
        assert store.get_run(run.id).status is RunStatus.QUEUED

    def test_duplicate_external_reference_returns_existing(self, store):
        first, _ = store.create_run(_make_run())
        second, created = store.create_run(_make_run())
        assert created is False
        assert second.id == first.id
        assert len(store.list_runs("repo1")) == 1

    def test_same_reference_in_other_workspace_is_allowed(self, store):
        store.create_run(_make_run())
        other = _make_run()
        other.workspace_id = "ws2"
        _, created = store.create_run(other)
        assert created is True

    def test_returned_run_is_a_copy(self, store):
        run, _ = store.create_run(_make_run())
        run.metadata["pull_request_number"] = 999
        assert store.get_run(run.id).metadata["pull_request_number"] == 1

    def test_update_run_persists_json_fields(self, store):
        run, _ = store.create_run(_make_run())
        run.policy_snapshot = {"tone": "direct", "enabled_rules": ["security"]}
        run.metrics = {"tokens_used_estimated": 42}
        run.status = RunStatus.FAILED
        store.update_run(run)

        loaded = store.get_run(run.id)
        assert loaded.status is RunStatus.FAILED
        assert loaded.policy_snapshot == {"tone": "direct", "enabled_rules": ["security"]}
        assert loaded.metrics["tokens_used_estimated"] == 42

    def test_update_unknown_run_raises(self, store):
        with pytest.raises(KeyError):
            store.update_run(_make_run())

    def test_merge_run_metadata_sets_only_given_keys(self, store):
        run, _ = store.create_run(_make_run())
        store.merge_run_metadata(run.id, {"labels": ["bug"], "summary_comment_id": 900, "body": None})

        loaded = store.get_run(run.id)
        assert loaded.metadata == {
            "pull_request_number": 1,
            "labels": ["bug"],
            "summary_comment_id": 900,
            "body": None,
        }
        assert loaded.status is RunStatus.QUEUED

    def test_merge_run_metadata_keeps_terminal_state(self, store):
        stale, _ = store.create_run(_make_run())
        assert store.claim_run(stale.id, "2026-01-01T00:00:00+00:00")
        done = store.get_run(stale.id)
        done.status = RunStatus.COMPLETED
        done.completed_at = "2026-01-01T00:01:00+00:00"
        done.policy_snapshot = {"tone": "direct"}
        store.update_run(done)

        # stale still says queued; only its metadata patch is written.
        stale.metadata["labels"] = ["wip"]
        store.merge_run_metadata(stale.id, {"labels": stale.metadata["labels"]})

        loaded = store.get_run(stale.id)
        assert loaded.status is RunStatus.COMPLETED
        assert loaded.completed_at == "2026-01-01T00:01:00+00:00"
        assert loaded.policy_snapshot == {"tone": "direct"}
        assert loaded.metadata["labels"] == ["wip"]

    def test_merge_run_metadata_overwrites_existing_key(self, store):
        run, _ = store.create_run(_make_run())
        store.merge_run_metadata(run.id, {"labels": ["a"]})
        store.merge_run_metadata(run.id, {"labels": ["b", "c"]})
        assert store.get_run(run.id).metadata["labels"] == ["b", "c"]

    def test_merge_metadata_unknown_run_raises(self, store):
        with pytest.raises(KeyError):
            store.merge_run_metadata("missing", {"labels": []})

    def test_claim_run_only_once(self, store):
        run, _ = store.create_run(_make_run())
        assert store.claim_run(run.id, "2026-01-01T00:00:00+00:00") is True
        assert store.claim_run(run.id, "2026-01-01T00:00:01+00:00") is False
        loaded = store.get_run(run.id)
        assert loaded.status is RunStatus.IN_PROGRESS
        assert loaded.started_at == "2026-01-01T00:00:00+00:00"

    def test_claim_missing_run(self, store):
        assert store.claim_run("missing", "2026-01-01T00:00:00+00:00") is False

    def test_find_latest_run_by_prefix(self, store):
        store.create_run(_make_run(sha="a" * 40, created_at="2026-01-01T00:00:00+00:00"))
        newer, _ = store.create_run(_make_run(sha="b" * 40, created_at="2026-01-02T00:00:00+00:00"))
        store.create_run(_make_run(pr_number=2, created_at="2026-01-03T00:00:00+00:00"))

        latest = store.find_latest_run("repo1", "github:pull_request:1:")
        assert latest.id == newer.id

    def test_find_latest_run_no_match(self, store):
        assert store.find_latest_run("repo1", "github:pull_request:5:") is None

    def test_list_runs_newest_first_with_filters(self, store):
        store.create_run(_make_run(pr_number=1, created_at="2026-01-01T00:00:00+00:00"))
        store.create_run(_make_run(pr_number=2, created_at="2026-01-02T00:00:00+00:00"))
        store.create_run(_make_run(pr_number=1, sha="c" * 40, created_at="2026-01-03T00:00:00+00:00"))

        runs = store.list_runs("repo1")
        assert [r.created_at[:10] for r in runs] == ["2026-01-03", "2026-01-02", "2026-01-01"]
        assert len(store.list_runs("repo1", pr_number=1)) == 2
        assert len(store.list_runs("repo1", limit=1)) == 1

    def test_list_runs_empty(self, store):
        assert store.list_runs("other") == []

    def test_count_runs_since_excludes_skipped(self, store):
        store.create_run(_make_run(pr_number=1, created_at="2026-03-02T00:00:00+00:00"))
        store.create_run(_make_run(pr_number=2, created_at="2026-03-05T00:00:00+00:00", status=RunStatus.SKIPPED))
        store.create_run(_make_run(pr_number=3, created_at="2026-02-20T00:00:00+00:00"))

        assert store.count_runs_since("ws1", "2026-03-01T00:00:00+00:00") == 1
        assert store.count_runs_since("ws1", "2026-03-01T00:00:00+00:00", exclude_skipped=False) == 2


# ---------------------------------------------------------------------------
# Findings and annotations
# ---------------------------------------------------------------------------


class TestFindings:
    def test_complete_run_persists_findings_and_run(self, store):
        run, _ = store.create_run(_make_run())
        run.status = RunStatus.COMPLETED
        store.complete_run(run, [_make_finding(run.id, "h1"), _make_finding(run.id, "h2", severity="low")])

        assert store.get_run(run.id).status is RunStatus.COMPLETED
        findings = store.list_findings(run.id)
        assert [f.finding_hash for f in findings] == ["h1", "h2"]
        assert findings[0].metadata == {"impact": "Data exfiltration"}
        assert findings[0].line_end == 12

    def test_duplicate_finding_hash_is_skipped(self, store):
        run, _ = store.create_run(_make_run())
        store.complete_run(run, [_make_finding(run.id, "h1"), _make_finding(run.id, "h1", title="dup")])
        findings = store.list_findings(run.id)
        assert len(findings) == 1
        assert findings[0].title == "SQL injection"

    def test_annotations_scoped_to_run(self, store):
        run, _ = store.create_run(_make_run())
        other, _ = store.create_run(_make_run(pr_number=2))
        finding = _make_finding(run.id)
        store.complete_run(run, [finding])
        store.complete_run(other, [_make_finding(other.id)])

        assert store.has_annotations(run.id) is False
        store.add_annotation(Annotation(finding_id=finding.id, external_id="1001"))

        assert store.has_annotations(run.id) is True
        assert store.has_annotations(other.id) is False
        annotations = store.list_annotations(run.id)
        assert annotations[0].external_id == "1001"
        assert annotations[0].type == "inline"
