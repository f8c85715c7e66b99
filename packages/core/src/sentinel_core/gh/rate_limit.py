"""Backoff for GitHub rate-limit responses.

Only rate-limit errors are waited out here. Timeouts, network failures and
every other GithubException propagate on the first occurrence; the task
queue owns retries for those.

When GitHub tells us how long to wait (Retry-After, or X-RateLimit-Reset
for primary limits) we honour it, otherwise we back off exponentially with
jitter. A shared cooldown makes concurrent callers wait too instead of
hammering the API while it is limiting us.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, TypeVar

from github import RateLimitExceededException

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    MAX_ATTEMPTS = 3
    BASE_DELAY = 1.0
    MAX_DELAY = 60.0

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._cooldown_until = 0.0

    def call(self, fn: Callable[[], T], operation: str = "GitHub API call") -> T:
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            self._wait_for_cooldown(operation)
            try:
                return fn()
            except RateLimitExceededException as e:
                delay = self._delay_for(e, attempt)
                if attempt == self.MAX_ATTEMPTS:
                    logger.error("%s rate limited after %d attempts", operation, attempt)
                    raise
                logger.warning(
                    "%s rate limited (attempt %d/%d). Waiting %.1fs...",
                    operation,
                    attempt,
                    self.MAX_ATTEMPTS,
                    delay,
                )
                self._start_cooldown(delay)
        raise AssertionError("unreachable")

    @property
    def cooldown_remaining(self) -> float:
        with self._lock:
            return max(0.0, self._cooldown_until - self._clock())

    def _wait_for_cooldown(self, operation: str) -> None:
        remaining = self.cooldown_remaining
        if remaining > 0:
            logger.debug("%s waiting %.1fs for rate-limit cooldown", operation, remaining)
            self._sleep(remaining)

    def _start_cooldown(self, delay: float) -> None:
        with self._lock:
            self._cooldown_until = max(self._cooldown_until, self._clock() + delay)

    def _delay_for(self, error: RateLimitExceededException, attempt: int) -> float:
        headers = {k.lower(): v for k, v in (error.headers or {}).items()}

        retry_after = headers.get("retry-after")
        if retry_after is not None:
            try:
                return min(float(retry_after), self.MAX_DELAY)
            except ValueError:
                pass

        if headers.get("x-ratelimit-remaining") == "0" and "x-ratelimit-reset" in headers:
            try:
                wait = float(headers["x-ratelimit-reset"]) - self._clock()
                return min(max(wait, 0.0) + 1.0, self.MAX_DELAY)
            except ValueError:
                pass

        backoff = self.BASE_DELAY * 2 ** (attempt - 1)
        return min(backoff + random.uniform(0, backoff / 2), self.MAX_DELAY)
