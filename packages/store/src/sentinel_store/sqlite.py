"""SQLiteStore — file-based store for single-host deployments and local runs.

Schema:
  workspaces    — tenant rows, carry the monthly run limit.
  repositories  — GitHub repositories, keyed by (installation_id, github_id).
  runs          — one row per review run; external_reference is unique per
                  workspace so duplicate webhook deliveries collapse.
  findings      — one row per finding; finding_hash is unique per run.
  annotations   — one row per published finding.

JSON-shaped fields (metrics, policy_snapshot, metadata, review_rules) are
stored as TEXT columns to keep the read paths free of JOINs.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading

from sentinel_store.base import BaseStore
from sentinel_store.models import Annotation, Finding, Repository, Run, RunStatus, Workspace

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS workspaces (
    id                  TEXT PRIMARY KEY,
    slug                TEXT NOT NULL,
    name                TEXT DEFAULT '',
    monthly_run_limit   INTEGER
);
CREATE TABLE IF NOT EXISTS repositories (
    id                  TEXT PRIMARY KEY,
    workspace_id        TEXT NOT NULL,
    installation_id     INTEGER NOT NULL,
    github_id           INTEGER NOT NULL,
    full_name           TEXT NOT NULL,
    default_branch      TEXT DEFAULT 'main',
    auto_review_enabled INTEGER DEFAULT 1,
    review_rules_json   TEXT DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_repositories_github ON repositories (installation_id, github_id);
CREATE TABLE IF NOT EXISTS runs (
    id                  TEXT PRIMARY KEY,
    workspace_id        TEXT NOT NULL,
    repository_id       TEXT NOT NULL,
    external_reference  TEXT NOT NULL,
    status              TEXT NOT NULL,
    created_at          TEXT NOT NULL,
    started_at          TEXT,
    completed_at        TEXT,
    duration_seconds    REAL,
    metrics_json        TEXT DEFAULT '{}',
    policy_snapshot_json TEXT,
    metadata_json       TEXT DEFAULT '{}',
    UNIQUE (workspace_id, external_reference)
);
CREATE INDEX IF NOT EXISTS idx_runs_repository ON runs (repository_id, created_at);
CREATE TABLE IF NOT EXISTS findings (
    id                  TEXT PRIMARY KEY,
    run_id              TEXT NOT NULL,
    finding_hash        TEXT NOT NULL,
    severity            TEXT NOT NULL,
    category            TEXT NOT NULL,
    title               TEXT NOT NULL,
    description         TEXT NOT NULL,
    confidence          REAL,
    file_path           TEXT,
    line_start          INTEGER,
    line_end            INTEGER,
    metadata_json       TEXT DEFAULT '{}',
    created_at          TEXT NOT NULL,
    UNIQUE (run_id, finding_hash)
);
CREATE TABLE IF NOT EXISTS annotations (
    id                  TEXT PRIMARY KEY,
    finding_id          TEXT NOT NULL,
    external_id         TEXT NOT NULL,
    type                TEXT NOT NULL,
    created_at          TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_annotations_finding ON annotations (finding_id);
"""


class SQLiteStore(BaseStore):
    """Stores pipeline state in a local SQLite database file.

    The database path defaults to `.sentinel.db` in the current working
    directory. Configure via sentinel.yml: `store_path: /path/to/sentinel.db`.
    One connection is shared across worker threads behind a lock.
    """

    def __init__(self, db_path: str = ".sentinel.db"):
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        logger.debug("Opened SQLite store at %s", db_path)

    # ------------------------------------------------------------------ #
    # Workspaces and repositories                                          #
    # ------------------------------------------------------------------ #

    def save_workspace(self, workspace: Workspace) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO workspaces (id, slug, name, monthly_run_limit) VALUES (?, ?, ?, ?)",
                (workspace.id, workspace.slug, workspace.name, workspace.monthly_run_limit),
            )

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM workspaces WHERE id=?", (workspace_id,)).fetchone()
        if row is None:
            return None
        return Workspace(
            id=row["id"],
            slug=row["slug"],
            name=row["name"] or "",
            monthly_run_limit=row["monthly_run_limit"],
        )

    def save_repository(self, repository: Repository) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO repositories
                  (id, workspace_id, installation_id, github_id, full_name,
                   default_branch, auto_review_enabled, review_rules_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    repository.id,
                    repository.workspace_id,
                    repository.installation_id,
                    repository.github_id,
                    repository.full_name,
                    repository.default_branch,
                    int(repository.auto_review_enabled),
                    json.dumps(repository.review_rules),
                ),
            )

    def get_repository(self, repository_id: str) -> Repository | None:
        return self._fetch_repository("SELECT * FROM repositories WHERE id=?", (repository_id,))

    def find_repository(self, installation_id: int, github_id: int) -> Repository | None:
        return self._fetch_repository(
            "SELECT * FROM repositories WHERE installation_id=? AND github_id=?",
            (installation_id, github_id),
        )

    def find_repository_by_name(self, full_name: str) -> Repository | None:
        return self._fetch_repository("SELECT * FROM repositories WHERE full_name=?", (full_name,))

    # ------------------------------------------------------------------ #
    # Runs                                                                 #
    # ------------------------------------------------------------------ #

    def create_run(self, run: Run) -> tuple[Run, bool]:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO runs
                  (id, workspace_id, repository_id, external_reference, status, created_at,
                   started_at, completed_at, duration_seconds, metrics_json,
                   policy_snapshot_json, metadata_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.workspace_id,
                    run.repository_id,
                    run.external_reference,
                    run.status.value,
                    run.created_at,
                    run.started_at,
                    run.completed_at,
                    run.duration_seconds,
                    json.dumps(run.metrics),
                    _dump_optional(run.policy_snapshot),
                    json.dumps(run.metadata),
                ),
            )
            created = cursor.rowcount == 1
            row = self._conn.execute(
                "SELECT * FROM runs WHERE workspace_id=? AND external_reference=?",
                (run.workspace_id, run.external_reference),
            ).fetchone()
        return self._row_to_run(row), created

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM runs WHERE id=?", (run_id,)).fetchone()
        return self._row_to_run(row) if row is not None else None

    def update_run(self, run: Run) -> None:
        with self._lock, self._conn:
            self._update_run(run)

    def merge_run_metadata(self, run_id: str, patch: dict) -> None:
        if not patch:
            if self.get_run(run_id) is None:
                raise KeyError(f"Unknown run: {run_id}")
            return
        # A single UPDATE; keys outside patch keep their stored values.
        paths = ", ".join("?, json(?)" for _ in patch)
        params: list = []
        for key, value in patch.items():
            params += [f'$."{key}"', json.dumps(value)]
        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"UPDATE runs SET metadata_json = json_set(COALESCE(metadata_json, '{{}}'), {paths}) WHERE id=?",
                (*params, run_id),
            )
        if cursor.rowcount != 1:
            raise KeyError(f"Unknown run: {run_id}")

    def claim_run(self, run_id: str, started_at: str) -> bool:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE runs SET status=?, started_at=? WHERE id=? AND status=?",
                (RunStatus.IN_PROGRESS.value, started_at, run_id, RunStatus.QUEUED.value),
            )
        return cursor.rowcount == 1

    def complete_run(self, run: Run, findings: list[Finding]) -> None:
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT OR IGNORE INTO findings
                  (id, run_id, finding_hash, severity, category, title, description,
                   confidence, file_path, line_start, line_end, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        f.id,
                        run.id,
                        f.finding_hash,
                        f.severity,
                        f.category,
                        f.title,
                        f.description,
                        f.confidence,
                        f.file_path,
                        f.line_start,
                        f.line_end,
                        json.dumps(f.metadata),
                        f.created_at,
                    )
                    for f in findings
                ],
            )
            self._update_run(run)

    def find_latest_run(self, repository_id: str, reference_prefix: str) -> Run | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT * FROM runs
                WHERE repository_id=? AND substr(external_reference, 1, ?)=?
                ORDER BY created_at DESC LIMIT 1
                """,
                (repository_id, len(reference_prefix), reference_prefix),
            ).fetchone()
        return self._row_to_run(row) if row is not None else None

    def list_runs(self, repository_id: str, pr_number: int | None = None, limit: int | None = None) -> list[Run]:
        query = "SELECT * FROM runs WHERE repository_id=?"
        params: list = [repository_id]
        if pr_number is not None:
            query += " AND substr(external_reference, 1, ?)=?"
            prefix = f"github:pull_request:{pr_number}:"
            params += [len(prefix), prefix]
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_run(r) for r in rows]

    def count_runs_since(self, workspace_id: str, since: str, exclude_skipped: bool = True) -> int:
        query = "SELECT COUNT(*) FROM runs WHERE workspace_id=? AND created_at>=?"
        params: list = [workspace_id, since]
        if exclude_skipped:
            query += " AND status!=?"
            params.append(RunStatus.SKIPPED.value)
        with self._lock:
            return self._conn.execute(query, params).fetchone()[0]

    # ------------------------------------------------------------------ #
    # Findings and annotations                                             #
    # ------------------------------------------------------------------ #

    def list_findings(self, run_id: str) -> list[Finding]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM findings WHERE run_id=? ORDER BY rowid", (run_id,)).fetchall()
        return [self._row_to_finding(r) for r in rows]

    def add_annotation(self, annotation: Annotation) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO annotations (id, finding_id, external_id, type, created_at) VALUES (?, ?, ?, ?, ?)",
                (annotation.id, annotation.finding_id, annotation.external_id, annotation.type, annotation.created_at),
            )

    def list_annotations(self, run_id: str) -> list[Annotation]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT a.* FROM annotations a
                JOIN findings f ON f.id = a.finding_id
                WHERE f.run_id=?
                ORDER BY a.rowid
                """,
                (run_id,),
            ).fetchall()
        return [
            Annotation(
                id=r["id"],
                finding_id=r["finding_id"],
                external_id=r["external_id"],
                type=r["type"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _update_run(self, run: Run) -> None:
        cursor = self._conn.execute(
            """
            UPDATE runs SET
              status=?, started_at=?, completed_at=?, duration_seconds=?,
              metrics_json=?, policy_snapshot_json=?, metadata_json=?
            WHERE id=?
            """,
            (
                run.status.value,
                run.started_at,
                run.completed_at,
                run.duration_seconds,
                json.dumps(run.metrics),
                _dump_optional(run.policy_snapshot),
                json.dumps(run.metadata),
                run.id,
            ),
        )
        if cursor.rowcount != 1:
            raise KeyError(f"Unknown run: {run.id}")

    def _fetch_repository(self, query: str, params: tuple) -> Repository | None:
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
        if row is None:
            return None
        return Repository(
            id=row["id"],
            workspace_id=row["workspace_id"],
            installation_id=row["installation_id"],
            github_id=row["github_id"],
            full_name=row["full_name"],
            default_branch=row["default_branch"] or "main",
            auto_review_enabled=bool(row["auto_review_enabled"]),
            review_rules=json.loads(row["review_rules_json"] or "{}"),
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            workspace_id=row["workspace_id"],
            repository_id=row["repository_id"],
            external_reference=row["external_reference"],
            status=RunStatus(row["status"]),
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration_seconds=row["duration_seconds"],
            metrics=json.loads(row["metrics_json"] or "{}"),
            policy_snapshot=json.loads(row["policy_snapshot_json"]) if row["policy_snapshot_json"] else None,
            metadata=json.loads(row["metadata_json"] or "{}"),
        )

    @staticmethod
    def _row_to_finding(row: sqlite3.Row) -> Finding:
        return Finding(
            id=row["id"],
            run_id=row["run_id"],
            finding_hash=row["finding_hash"],
            severity=row["severity"],
            category=row["category"],
            title=row["title"],
            description=row["description"],
            confidence=row["confidence"] if row["confidence"] is not None else 0.5,
            file_path=row["file_path"],
            line_start=row["line_start"],
            line_end=row["line_end"],
            metadata=json.loads(row["metadata_json"] or "{}"),
            created_at=row["created_at"],
        )


def _dump_optional(value: dict | None) -> str | None:
    return json.dumps(value) if value is not None else None
