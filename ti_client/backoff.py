"""Exponential backoff schedules for retried TI calls.

Each outbound operation creates its own BackoffSchedule and drops it when
the operation finishes, so concurrent calls never share retry state.
Wait durations come from tenacity's exponential-with-jitter strategy; the
schedule adds the elapsed-time budget on top of it.
"""

from __future__ import annotations

import time
from typing import Callable

from tenacity import RetryCallState, wait_exponential_jitter

# Growth parameters. The first wait is 0.5s plus up to 0.5s of jitter and
# each following wait grows by 1.5x, capped at one minute.
DEFAULT_INITIAL_INTERVAL = 0.5
DEFAULT_MULTIPLIER = 1.5
DEFAULT_MAX_INTERVAL = 60.0
DEFAULT_JITTER = 0.5

# Per-operation budgets (seconds of total elapsed time before giving up).
RESULTS_BUDGET = 10 * 60
CALLGRAPH_BUDGET = 45 * 60
LOOKUP_BUDGET = 5 * 60


class BackoffSchedule:
    """Stateful iterator of wait durations.

    ``max_elapsed == 0`` means the schedule never stops. Otherwise next()
    returns None once the time spent since the schedule was created plus the
    next wait would exceed ``max_elapsed``.
    """

    def __init__(
        self,
        max_elapsed: float,
        initial_interval: float = DEFAULT_INITIAL_INTERVAL,
        multiplier: float = DEFAULT_MULTIPLIER,
        max_interval: float = DEFAULT_MAX_INTERVAL,
        jitter: float = DEFAULT_JITTER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_elapsed < 0:
            raise ValueError("max_elapsed must be >= 0")
        self.max_elapsed = max_elapsed
        self._wait = wait_exponential_jitter(
            multiplier=initial_interval,
            max=max_interval,
            exp_base=multiplier,
            jitter=jitter,
        )
        self._clock = clock
        self._start = clock()
        self._state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})

    @property
    def bounded(self) -> bool:
        return self.max_elapsed > 0

    def elapsed(self) -> float:
        return self._clock() - self._start

    def next(self) -> float | None:
        """Return the next wait in seconds, or None when the budget is spent."""
        delay = self._wait(self._state)
        if self.bounded and self.elapsed() + delay > self.max_elapsed:
            return None
        self._state.attempt_number += 1
        return delay

    def __iter__(self) -> BackoffSchedule:
        return self

    def __next__(self) -> float:
        delay = self.next()
        if delay is None:
            raise StopIteration
        return delay


def new_backoff(max_elapsed: float, **kwargs) -> BackoffSchedule:
    """Create a fresh schedule; ``max_elapsed=0`` retries forever."""
    return BackoffSchedule(max_elapsed, **kwargs)


def new_infinite_backoff(**kwargs) -> BackoffSchedule:
    return BackoffSchedule(0, **kwargs)
