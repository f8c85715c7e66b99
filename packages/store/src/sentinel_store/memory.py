"""In-memory store — the default for tests and one-shot CLI runs.

Everything lives in dicts guarded by a single lock. Records are deep-copied
on the way in and out so callers see the same isolation a database gives.
"""

from __future__ import annotations

import copy
import threading
from typing import TYPE_CHECKING

from sentinel_store.base import BaseStore
from sentinel_store.models import RunStatus

if TYPE_CHECKING:
    from sentinel_store.models import Annotation, Finding, Repository, Run, Workspace


class MemoryStore(BaseStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._workspaces: dict[str, Workspace] = {}
        self._repositories: dict[str, Repository] = {}
        self._runs: dict[str, Run] = {}
        self._references: dict[tuple[str, str], str] = {}
        self._findings: dict[str, list[Finding]] = {}
        self._annotations: dict[str, Annotation] = {}

    def save_workspace(self, workspace: Workspace) -> None:
        with self._lock:
            self._workspaces[workspace.id] = copy.deepcopy(workspace)

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        with self._lock:
            return copy.deepcopy(self._workspaces.get(workspace_id))

    def save_repository(self, repository: Repository) -> None:
        with self._lock:
            self._repositories[repository.id] = copy.deepcopy(repository)

    def get_repository(self, repository_id: str) -> Repository | None:
        with self._lock:
            return copy.deepcopy(self._repositories.get(repository_id))

    def find_repository(self, installation_id: int, github_id: int) -> Repository | None:
        with self._lock:
            for repository in self._repositories.values():
                if repository.installation_id == installation_id and repository.github_id == github_id:
                    return copy.deepcopy(repository)
        return None

    def find_repository_by_name(self, full_name: str) -> Repository | None:
        with self._lock:
            for repository in self._repositories.values():
                if repository.full_name == full_name:
                    return copy.deepcopy(repository)
        return None

    def create_run(self, run: Run) -> tuple[Run, bool]:
        key = (run.workspace_id, run.external_reference)
        with self._lock:
            existing_id = self._references.get(key)
            if existing_id is not None:
                return copy.deepcopy(self._runs[existing_id]), False
            self._runs[run.id] = copy.deepcopy(run)
            self._references[key] = run.id
            self._findings[run.id] = []
            return copy.deepcopy(run), True

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            return copy.deepcopy(self._runs.get(run_id))

    def update_run(self, run: Run) -> None:
        with self._lock:
            if run.id not in self._runs:
                raise KeyError(f"Unknown run: {run.id}")
            self._runs[run.id] = copy.deepcopy(run)

    def merge_run_metadata(self, run_id: str, patch: dict) -> None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise KeyError(f"Unknown run: {run_id}")
            run.metadata.update(copy.deepcopy(dict(patch)))

    def claim_run(self, run_id: str, started_at: str) -> bool:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status is not RunStatus.QUEUED:
                return False
            run.status = RunStatus.IN_PROGRESS
            run.started_at = started_at
            return True

    def complete_run(self, run: Run, findings: list[Finding]) -> None:
        with self._lock:
            if run.id not in self._runs:
                raise KeyError(f"Unknown run: {run.id}")
            stored = self._findings.setdefault(run.id, [])
            seen = {f.finding_hash for f in stored}
            for finding in findings:
                if finding.finding_hash in seen:
                    continue
                seen.add(finding.finding_hash)
                stored.append(copy.deepcopy(finding))
            self._runs[run.id] = copy.deepcopy(run)

    def find_latest_run(self, repository_id: str, reference_prefix: str) -> Run | None:
        with self._lock:
            matches = [
                r
                for r in self._runs.values()
                if r.repository_id == repository_id and r.external_reference.startswith(reference_prefix)
            ]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda r: r.created_at))

    def list_runs(self, repository_id: str, pr_number: int | None = None, limit: int | None = None) -> list[Run]:
        with self._lock:
            runs = [r for r in self._runs.values() if r.repository_id == repository_id]
            if pr_number is not None:
                runs = [r for r in runs if r.pull_request_number == pr_number]
            runs.sort(key=lambda r: r.created_at, reverse=True)
            if limit is not None:
                runs = runs[:limit]
            return copy.deepcopy(runs)

    def count_runs_since(self, workspace_id: str, since: str, exclude_skipped: bool = True) -> int:
        with self._lock:
            return sum(
                1
                for r in self._runs.values()
                if r.workspace_id == workspace_id
                and r.created_at >= since
                and not (exclude_skipped and r.status is RunStatus.SKIPPED)
            )

    def list_findings(self, run_id: str) -> list[Finding]:
        with self._lock:
            return copy.deepcopy(self._findings.get(run_id, []))

    def add_annotation(self, annotation: Annotation) -> None:
        with self._lock:
            self._annotations[annotation.id] = copy.deepcopy(annotation)

    def list_annotations(self, run_id: str) -> list[Annotation]:
        with self._lock:
            finding_ids = {f.id for f in self._findings.get(run_id, [])}
            return [copy.deepcopy(a) for a in self._annotations.values() if a.finding_id in finding_ids]
