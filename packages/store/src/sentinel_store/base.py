"""Abstract store interface.

Every persistence backend (in-memory, SQLite, Postgres) implements this
interface. The pipeline depends on BaseStore, never on a concrete backend,
so backends are swappable and tests can run entirely in memory.

Records go in and come out as copies: mutating a returned Run does not
change stored state until it is passed back through update_run().
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sentinel_store.models import Annotation, Finding, Repository, Run, Workspace


class BaseStore(ABC):
    """Pluggable persistence layer for runs, findings and annotations.

    Implementations must be safe to call from several worker threads.
    """

    # ------------------------------------------------------------------ #
    # Workspaces and repositories                                          #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def save_workspace(self, workspace: Workspace) -> None:
        """Insert or replace a workspace."""

    @abstractmethod
    def get_workspace(self, workspace_id: str) -> Workspace | None: ...

    @abstractmethod
    def save_repository(self, repository: Repository) -> None:
        """Insert or replace a repository."""

    @abstractmethod
    def get_repository(self, repository_id: str) -> Repository | None: ...

    @abstractmethod
    def find_repository(self, installation_id: int, github_id: int) -> Repository | None:
        """Look up a repository by its GitHub App installation and GitHub id."""

    @abstractmethod
    def find_repository_by_name(self, full_name: str) -> Repository | None: ...

    # ------------------------------------------------------------------ #
    # Runs                                                                 #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def create_run(self, run: Run) -> tuple[Run, bool]:
        """Insert run unless one with the same (workspace_id, external_reference) exists.

        Returns (stored_run, created). When the reference already exists the
        existing Run is returned untouched and created is False.
        """

    @abstractmethod
    def get_run(self, run_id: str) -> Run | None: ...

    @abstractmethod
    def update_run(self, run: Run) -> None:
        """Persist every mutable field of run."""

    @abstractmethod
    def merge_run_metadata(self, run_id: str, patch: dict) -> None:
        """Set the given top-level metadata keys on a run, leaving every other field alone.

        Status, timings and the policy snapshot are never touched, so a
        writer holding a stale copy of the run cannot roll its state back.
        Raises KeyError for an unknown run.
        """

    @abstractmethod
    def claim_run(self, run_id: str, started_at: str) -> bool:
        """Atomically move a queued run to in_progress.

        Returns False when the run is missing or no longer queued, so two
        workers handed the same task cannot both execute it.
        """

    @abstractmethod
    def complete_run(self, run: Run, findings: list[Finding]) -> None:
        """Persist findings, then run, in a single transaction.

        Findings whose finding_hash already exists for the run are skipped.
        """

    @abstractmethod
    def find_latest_run(self, repository_id: str, reference_prefix: str) -> Run | None:
        """Return the most recently created run whose external_reference starts with reference_prefix."""

    @abstractmethod
    def list_runs(self, repository_id: str, pr_number: int | None = None, limit: int | None = None) -> list[Run]:
        """Return runs for a repository, newest first. Never raises on empty results."""

    @abstractmethod
    def count_runs_since(self, workspace_id: str, since: str, exclude_skipped: bool = True) -> int:
        """Count runs created at or after the ISO timestamp since."""

    # ------------------------------------------------------------------ #
    # Findings and annotations                                             #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def list_findings(self, run_id: str) -> list[Finding]:
        """Return the run's findings in insertion order."""

    @abstractmethod
    def add_annotation(self, annotation: Annotation) -> None: ...

    @abstractmethod
    def list_annotations(self, run_id: str) -> list[Annotation]: ...

    def has_annotations(self, run_id: str) -> bool:
        return bool(self.list_annotations(run_id))

    def close(self) -> None:
        """Release any resources held by the store (connections, file handles).

        Default is a no-op so callers can always call close() safely.
        """
