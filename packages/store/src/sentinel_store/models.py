"""Persisted pipeline records.

Plain dataclasses returned by every store backend. Decoupled from
sentinel_core so the store layer can be used (and tested) on its own:
severities and categories are stored as their string values and the core
maps them back onto its enums.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.SKIPPED)


@dataclass
class Workspace:
    id: str
    slug: str
    name: str = ""
    monthly_run_limit: int | None = None  # None = unlimited


@dataclass
class Repository:
    """A GitHub repository connected to a workspace through an App installation."""

    id: str
    workspace_id: str
    installation_id: int
    github_id: int
    full_name: str  # "owner/name"
    default_branch: str = "main"
    auto_review_enabled: bool = True
    review_rules: dict = field(default_factory=dict)


@dataclass
class Run:
    """One review execution for one pull-request event.

    external_reference is unique per workspace; it is what makes duplicate
    webhook deliveries collapse onto a single Run.
    """

    workspace_id: str
    repository_id: str
    external_reference: str
    status: RunStatus = RunStatus.QUEUED
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)  # ISO-8601 UTC timestamp
    started_at: str | None = None
    completed_at: str | None = None
    duration_seconds: float | None = None
    metrics: dict = field(default_factory=dict)
    policy_snapshot: dict | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def pull_request_number(self):
        return self.metadata.get("pull_request_number")


@dataclass
class Finding:
    """A single issue reported by the review engine for a Run."""

    run_id: str
    finding_hash: str
    severity: str
    category: str
    title: str
    description: str
    confidence: float = 0.5
    file_path: str | None = None
    line_start: int | None = None
    line_end: int | None = None
    metadata: dict = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


@dataclass
class Annotation:
    """Record that a Finding was published externally (e.g. as a PR comment)."""

    finding_id: str
    external_id: str
    type: str = "inline"
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


class TaskStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    DEAD = "dead"


@dataclass
class Task:
    """A unit of deferred work on the queue (e.g. execute_review for one Run)."""

    name: str
    payload: dict = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    available_at: float = 0.0  # epoch seconds
    last_error: str | None = None
    id: str = field(default_factory=new_id)
