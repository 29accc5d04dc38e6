"""Cooperative cancellation for client calls.

A CancellationToken plays the role of a request context: the caller may
cancel it from another thread or give it a deadline. The request executor
checks it before every attempt and sleeps on it between retries, so a
cancelled call never enters another backoff sleep.

Example:
    >>> token = CancellationToken(timeout=30)
    >>> client.select_tests("step", "feature", "main", request, cancel=token)
"""

from __future__ import annotations

import threading
import time

from ti_client.errors import CancelledError, DeadlineExceededError


class CancellationToken:
    """Thread-safe cancellation token with an optional deadline.

    Args:
        deadline: Absolute ``time.monotonic()`` value after which the token
            counts as expired.
        timeout: Seconds from now until the deadline. Mutually exclusive
            with ``deadline``.
    """

    def __init__(self, deadline: float | None = None, timeout: float | None = None) -> None:
        if deadline is not None and timeout is not None:
            raise ValueError("deadline and timeout are mutually exclusive")
        if timeout is not None:
            deadline = time.monotonic() + timeout
        self._deadline = deadline
        self._cancelled = threading.Event()

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        """True once cancel() was called or the deadline passed."""
        return self._cancelled.is_set() or self.expired()

    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left until the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def error(self) -> CancelledError | None:
        """The error describing why the token fired, or None if it has not."""
        if self._cancelled.is_set():
            return CancelledError("operation cancelled")
        if self.expired():
            return DeadlineExceededError("deadline exceeded")
        return None

    def raise_if_cancelled(self) -> None:
        """Raise CancelledError (or DeadlineExceededError) if the token fired."""
        error = self.error()
        if error is not None:
            raise error

    def wait(self, seconds: float) -> bool:
        """Block for up to ``seconds``; return True early if the token fires.

        The wait is cut short at the deadline, so a sleep never outlives it.
        """
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._cancelled.wait(remaining)
            return True
        return self._cancelled.wait(seconds)
