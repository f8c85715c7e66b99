"""Work queue for deferred pipeline tasks.

Delivery is at-least-once. claim() leases a task for visibility_timeout
seconds; a worker that dies mid-task simply lets the lease expire and the
task is handed out again. Handlers must therefore be idempotent, which the
pipeline guarantees through its Run status guard and Annotation guard.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable

from sentinel_store.models import Task, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_VISIBILITY_TIMEOUT = 900.0


class BaseQueue(ABC):
    def __init__(self, visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT, clock: Callable[[], float] = time.time):
        self.visibility_timeout = visibility_timeout
        self._clock = clock

    @abstractmethod
    def enqueue(self, name: str, payload: dict, delay_seconds: float = 0) -> Task:
        """Submit a task that becomes claimable after delay_seconds."""

    @abstractmethod
    def claim(self, limit: int = 1) -> list[Task]:
        """Lease up to limit available tasks, oldest first, incrementing their attempts."""

    @abstractmethod
    def ack(self, task_id: str) -> None:
        """Mark a claimed task as done."""

    @abstractmethod
    def release(self, task_id: str, error: str, delay_seconds: float = 0) -> None:
        """Return a claimed task to the queue for redelivery."""

    @abstractmethod
    def fail(self, task_id: str, error: str) -> None:
        """Dead-letter a task; it is never delivered again."""

    @abstractmethod
    def get(self, task_id: str) -> Task | None: ...

    @abstractmethod
    def pending_count(self) -> int:
        """Number of tasks that are pending or leased but not finished."""

    def close(self) -> None:
        pass


class MemoryQueue(BaseQueue):
    def __init__(self, visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT, clock: Callable[[], float] = time.time):
        super().__init__(visibility_timeout, clock)
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}

    def enqueue(self, name: str, payload: dict, delay_seconds: float = 0) -> Task:
        task = Task(name=name, payload=dict(payload), available_at=self._clock() + delay_seconds)
        with self._lock:
            self._tasks[task.id] = task
        logger.debug("Enqueued %s %s", name, payload)
        return replace(task)

    def claim(self, limit: int = 1) -> list[Task]:
        now = self._clock()
        claimed = []
        with self._lock:
            for task in self._tasks.values():
                if len(claimed) >= limit:
                    break
                if task.status in (TaskStatus.PENDING, TaskStatus.CLAIMED) and task.available_at <= now:
                    task.status = TaskStatus.CLAIMED
                    task.attempts += 1
                    task.available_at = now + self.visibility_timeout
                    claimed.append(replace(task))
        return claimed

    def ack(self, task_id: str) -> None:
        with self._lock:
            self._tasks[task_id].status = TaskStatus.DONE

    def release(self, task_id: str, error: str, delay_seconds: float = 0) -> None:
        with self._lock:
            task = self._tasks[task_id]
            task.status = TaskStatus.PENDING
            task.last_error = error
            task.available_at = self._clock() + delay_seconds

    def fail(self, task_id: str, error: str) -> None:
        with self._lock:
            task = self._tasks[task_id]
            task.status = TaskStatus.DEAD
            task.last_error = error

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return replace(task) if task is not None else None

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for t in self._tasks.values() if t.status in (TaskStatus.PENDING, TaskStatus.CLAIMED))


_QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    payload_json    TEXT NOT NULL,
    status          TEXT NOT NULL,
    attempts        INTEGER DEFAULT 0,
    available_at    REAL NOT NULL,
    last_error      TEXT
);
CREATE INDEX IF NOT EXISTS idx_tasks_available ON tasks (status, available_at);
"""


class SQLiteQueue(BaseQueue):
    """Durable queue sharing the SQLite file used by SQLiteStore."""

    def __init__(
        self,
        db_path: str = ".sentinel.db",
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(visibility_timeout, clock)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_QUEUE_SCHEMA)
        self._conn.commit()

    def enqueue(self, name: str, payload: dict, delay_seconds: float = 0) -> Task:
        task = Task(name=name, payload=dict(payload), available_at=self._clock() + delay_seconds)
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO tasks (id, name, payload_json, status, attempts, available_at) VALUES (?, ?, ?, ?, ?, ?)",
                (task.id, task.name, json.dumps(task.payload), task.status.value, 0, task.available_at),
            )
        logger.debug("Enqueued %s %s", name, payload)
        return task

    def claim(self, limit: int = 1) -> list[Task]:
        now = self._clock()
        with self._lock, self._conn:
            rows = self._conn.execute(
                """
                SELECT * FROM tasks
                WHERE status IN (?, ?) AND available_at<=?
                ORDER BY rowid LIMIT ?
                """,
                (TaskStatus.PENDING.value, TaskStatus.CLAIMED.value, now, limit),
            ).fetchall()
            lease_until = now + self.visibility_timeout
            self._conn.executemany(
                "UPDATE tasks SET status=?, attempts=attempts+1, available_at=? WHERE id=?",
                [(TaskStatus.CLAIMED.value, lease_until, r["id"]) for r in rows],
            )
        return [
            Task(
                id=r["id"],
                name=r["name"],
                payload=json.loads(r["payload_json"]),
                status=TaskStatus.CLAIMED,
                attempts=r["attempts"] + 1,
                available_at=lease_until,
                last_error=r["last_error"],
            )
            for r in rows
        ]

    def ack(self, task_id: str) -> None:
        self._set(task_id, status=TaskStatus.DONE)

    def release(self, task_id: str, error: str, delay_seconds: float = 0) -> None:
        self._set(task_id, status=TaskStatus.PENDING, error=error, available_at=self._clock() + delay_seconds)

    def fail(self, task_id: str, error: str) -> None:
        self._set(task_id, status=TaskStatus.DEAD, error=error)

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            r = self._conn.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
        if r is None:
            return None
        return Task(
            id=r["id"],
            name=r["name"],
            payload=json.loads(r["payload_json"]),
            status=TaskStatus(r["status"]),
            attempts=r["attempts"],
            available_at=r["available_at"],
            last_error=r["last_error"],
        )

    def pending_count(self) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM tasks WHERE status IN (?, ?)",
                (TaskStatus.PENDING.value, TaskStatus.CLAIMED.value),
            ).fetchone()[0]

    def close(self) -> None:
        self._conn.close()

    def _set(self, task_id: str, status: TaskStatus, error: str | None = None, available_at: float | None = None):
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE tasks SET status=?,
                  last_error=COALESCE(?, last_error),
                  available_at=COALESCE(?, available_at)
                WHERE id=?
                """,
                (status.value, error, available_at, task_id),
            )
