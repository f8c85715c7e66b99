"""Tests for the work queue backends."""

from __future__ import annotations

import pytest

from sentinel_store.models import TaskStatus
from sentinel_store.queue import MemoryQueue, SQLiteQueue


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def queue(request, tmp_path, clock):
    if request.param == "memory":
        backend = MemoryQueue(visibility_timeout=60, clock=clock)
    else:
        backend = SQLiteQueue(db_path=str(tmp_path / "queue.db"), visibility_timeout=60, clock=clock)
    yield backend
    backend.close()


class TestQueue:
    def test_enqueue_then_claim(self, queue):
        task = queue.enqueue("execute_review", {"run_id": "r1"})
        claimed = queue.claim(limit=5)
        assert [t.id for t in claimed] == [task.id]
        assert claimed[0].payload == {"run_id": "r1"}
        assert claimed[0].attempts == 1
        assert claimed[0].status is TaskStatus.CLAIMED

    def test_claim_respects_limit_and_order(self, queue):
        first = queue.enqueue("a", {})
        second = queue.enqueue("b", {})
        queue.enqueue("c", {})
        assert [t.id for t in queue.claim(limit=2)] == [first.id, second.id]

    def test_delayed_task_not_claimable_yet(self, queue, clock):
        queue.enqueue("publish_annotations", {"run_id": "r1"}, delay_seconds=30)
        assert queue.claim() == []
        clock.now += 31
        assert len(queue.claim()) == 1

    def test_claimed_task_is_leased(self, queue, clock):
        queue.enqueue("a", {})
        assert len(queue.claim()) == 1
        assert queue.claim() == []

    def test_expired_lease_is_redelivered(self, queue, clock):
        task = queue.enqueue("a", {})
        queue.claim()
        clock.now += 61
        redelivered = queue.claim()
        assert [t.id for t in redelivered] == [task.id]
        assert redelivered[0].attempts == 2

    def test_ack_removes_from_pending(self, queue):
        task = queue.enqueue("a", {})
        queue.claim()
        queue.ack(task.id)
        assert queue.pending_count() == 0
        assert queue.get(task.id).status is TaskStatus.DONE

    def test_release_records_error_and_delay(self, queue, clock):
        task = queue.enqueue("a", {})
        queue.claim()
        queue.release(task.id, "boom", delay_seconds=10)
        assert queue.claim() == []
        clock.now += 10
        claimed = queue.claim()
        assert claimed[0].last_error == "boom"

    def test_fail_dead_letters(self, queue, clock):
        task = queue.enqueue("a", {})
        queue.claim()
        queue.fail(task.id, "unknown task")
        clock.now += 1000
        assert queue.claim() == []
        assert queue.get(task.id).status is TaskStatus.DEAD
        assert queue.get(task.id).last_error == "unknown task"

    def test_get_missing(self, queue):
        assert queue.get("missing") is None
