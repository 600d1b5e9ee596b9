"""Retry strategies and cancellable poll loops.

Every long-running cloud operation the orchestrator drives (DB create,
cache create, certificate issuance, namespace operations, log exports,
service stability) is a poll loop. All of them share one delay sequence,
:data:`DEFAULT_POLL_INTERVALS`, and one cancellation primitive: a
``threading.Event`` owned by the runner. Sleeping through ``cancel.wait()``
means an operator interrupt is honoured at the next suspension point.

Example:
    >>> from spine_devops.core.retry import PollIntervals, poll_until
    >>>
    >>> strategy = PollIntervals()
    >>> [strategy.next_delay(i) for i in (0, 1, 12, 40)]
    [0.001, 0.002, 1.0, 60.0]
    >>> poll_until(lambda: True, what="instant")
    True
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence, TypeVar

from spine_devops.core.errors import ConvergenceTimeoutError, is_retryable

T = TypeVar("T")

# Canonical delay sequence (seconds). Starts at 1ms, roughly doubles, and
# sticks at one minute.
DEFAULT_POLL_INTERVALS: tuple[float, ...] = (
    0.001, 0.002, 0.002, 0.005, 0.010, 0.020, 0.050, 0.050, 0.100, 0.100,
    0.200, 0.500, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0,
)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based attempt number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another retry should be attempted.

        Args:
            attempt: Current attempt number
            error: The exception that caused the failure

        Returns:
            True if should retry, False otherwise
        """
        ...


@dataclass
class PollIntervals(RetryStrategy):
    """Fixed delay table that sticks at its last entry.

    Attributes:
        intervals: Delay table in seconds
        max_retries: Attempt cap, ``None`` for unbounded (cancellation only)
        retry_on: Predicate deciding whether an error is worth another attempt
    """

    intervals: Sequence[float] = DEFAULT_POLL_INTERVALS
    max_retries: int | None = None
    retry_on: Callable[[Exception], bool] = is_retryable

    def next_delay(self, attempt: int) -> float:
        if not self.intervals:
            return 0.0
        return self.intervals[min(attempt, len(self.intervals) - 1)]

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        if self.max_retries is not None and attempt >= self.max_retries:
            return False
        if error is not None:
            return self.retry_on(error)
        return True

    def waiter_config(self, attempt: int) -> dict[str, int]:
        """botocore ``WaiterConfig`` for one waiter attempt at this point of the table.

        Waiters accept whole seconds only, so the sub-second head of the table
        rounds up to 1s.
        """
        return {"Delay": max(1, round(self.next_delay(attempt))), "MaxAttempts": 1}


def sleep_or_cancel(delay: float, cancel: threading.Event | None, what: str = "operation") -> None:
    """Sleep for ``delay`` seconds unless ``cancel`` fires first.

    Raises:
        ConvergenceTimeoutError: if the cancel event is (or becomes) set
    """
    if cancel is None:
        time.sleep(delay)
        return
    if cancel.is_set() or cancel.wait(delay):
        raise ConvergenceTimeoutError(f"Cancelled while waiting for {what}")


@dataclass
class RetryContext:
    """Context tracking retry state.

    Example:
        >>> ctx = RetryContext(PollIntervals(max_retries=5))
        >>> result = ctx.run(lambda: push_image())
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    cancel: threading.Event | None = None
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since first attempt."""
        return (utcnow() - self.started_at).total_seconds()

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute function with retry logic.

        Raises:
            Last exception if the strategy stops retrying, or
            ConvergenceTimeoutError if cancelled between attempts
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                sleep_or_cancel(delay, self.cancel, getattr(func, "__name__", "retry"))


def poll_until(
    check: Callable[[], T],
    *,
    strategy: RetryStrategy | None = None,
    cancel: threading.Event | None = None,
    what: str = "resource",
) -> T:
    """Call ``check`` until it returns a truthy value and return that value.

    Exceptions raised by ``check`` propagate; terminal states should be
    raised from inside ``check``. The loop only ends on success, an error,
    the strategy's attempt cap, or cancellation.

    Raises:
        ConvergenceTimeoutError: when cancelled or the strategy stops polling
    """
    strategy = strategy or PollIntervals()
    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise ConvergenceTimeoutError(f"Cancelled while waiting for {what}")
        result = check()
        if result:
            return result
        if not strategy.should_retry(attempt + 1):
            raise ConvergenceTimeoutError(f"Gave up waiting for {what} after {attempt + 1} checks")
        sleep_or_cancel(strategy.next_delay(attempt), cancel, what)
        attempt += 1


__all__ = [
    "DEFAULT_POLL_INTERVALS",
    "RetryStrategy",
    "PollIntervals",
    "RetryContext",
    "poll_until",
    "sleep_or_cancel",
]
