"""Worker pool that drains the task queue.

Each claimed task runs on its own thread from a ThreadPoolExecutor, so a
slow AI call occupies one slot and never blocks unrelated runs. A handler
that raises has its task released with exponential delay; after
max_attempts the task is dead-lettered. Handlers are safe to redeliver
because RunStateMachine and AnnotationPublisher are idempotent.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from sentinel_core.pipeline import EXECUTE_REVIEW_TASK, PUBLISH_ANNOTATIONS_TASK

if TYPE_CHECKING:
    from sentinel_core.pipeline import RunStateMachine
    from sentinel_core.publisher import AnnotationPublisher
    from sentinel_store.models import Task
    from sentinel_store.queue import BaseQueue

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
DEFAULT_MAX_ATTEMPTS = 5
_RETRY_BASE_DELAY = 30.0
_RETRY_MAX_DELAY = 900.0

Handler = Callable[[str], object]


def build_handlers(state_machine: RunStateMachine, publisher: AnnotationPublisher) -> dict[str, Handler]:
    return {
        EXECUTE_REVIEW_TASK: state_machine.execute,
        PUBLISH_ANNOTATIONS_TASK: publisher.publish,
    }


class Worker:
    def __init__(
        self,
        queue: BaseQueue,
        handlers: Mapping[str, Handler],
        concurrency: int = DEFAULT_CONCURRENCY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._queue = queue
        self._handlers = dict(handlers)
        self.concurrency = max(1, concurrency)
        self.max_attempts = max_attempts
        self._stop = threading.Event()

    def run_once(self) -> int:
        """Claim up to `concurrency` tasks and run them; returns how many were claimed."""
        tasks = self._queue.claim(limit=self.concurrency)
        if not tasks:
            return 0
        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = {executor.submit(self._process, task): task for task in tasks}
            for future in as_completed(futures):
                # _process records every outcome on the queue itself.
                future.result()
        return len(tasks)

    def run_forever(self, poll_interval: float = 2.0) -> None:
        logger.info("Worker started (concurrency=%d)", self.concurrency)
        while not self._stop.is_set():
            if self.run_once() == 0:
                self._stop.wait(poll_interval)
        logger.info("Worker stopped")

    def stop(self) -> None:
        self._stop.set()

    def _process(self, task: Task) -> None:
        handler = self._handlers.get(task.name)
        if handler is None:
            logger.error("No handler for task %s (%s); dead-lettering", task.id, task.name)
            self._queue.fail(task.id, f"Unknown task: {task.name}")
            return

        run_id = task.payload.get("run_id")
        try:
            handler(run_id)
        except Exception as e:
            if task.attempts >= self.max_attempts:
                logger.exception("Task %s (%s) failed permanently after %d attempts", task.id, task.name, task.attempts)
                self._queue.fail(task.id, str(e))
                return
            delay = min(_RETRY_BASE_DELAY * 2 ** (task.attempts - 1), _RETRY_MAX_DELAY)
            logger.warning(
                "Task %s (%s) attempt %d failed: %s. Redelivering in %ds",
                task.id,
                task.name,
                task.attempts,
                e,
                delay,
            )
            self._queue.release(task.id, str(e), delay_seconds=delay)
            return
        self._queue.ack(task.id)
        logger.debug("Task %s (%s) done", task.id, task.name)
