"""Retry scheduling policy."""

import random
from datetime import datetime, timedelta
from typing import Callable

from jobqueue.models.base import utcnow

# Maps the number of retries attached to a job to the delay before the next one
RetryScheduler = Callable[[int], timedelta]


class ExponentialRetryScheduler:
    """
    Exponential backoff with an optional jitter.

    Formula:
        delay = min(base * (2 ^ attempt), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)
    """

    def __init__(
        self,
        base_delay_seconds: float = 5,
        max_delay_seconds: float = 3600,
        jitter: bool = False,
    ):
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter = jitter

    def __call__(self, attempt: int) -> timedelta:
        # 2^20 seconds is ~12 days, well past any sane max delay
        safe_attempt = min(max(attempt, 0), 20)

        delay = min(self.base_delay_seconds * (2**safe_attempt), self.max_delay_seconds)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return timedelta(seconds=delay)

    def next_run(self, attempt: int, now: datetime | None = None) -> datetime:
        return (now or utcnow()) + self(attempt)

    def __repr__(self) -> str:
        return (
            f"ExponentialRetryScheduler(base={self.base_delay_seconds}s, "
            f"max={self.max_delay_seconds}s, jitter={self.jitter})"
        )
