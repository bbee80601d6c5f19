"""
Rate-Limited Executor for directory API calls

Wraps any remote call with fixed inter-call pacing and exponential-backoff
retry on transient failures. Permanent failures are raised immediately.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, Iterable, Iterator, List, Optional, TypeVar

import requests

from rostersync.errors import DirectoryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({403, 429, 500, 503})
PERMANENT_STATUS_CODES = frozenset({400, 404, 409})


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy for remote calls.

    Attributes:
        max_attempts: Total attempts including the first one
        backoff_base: Delay in seconds before the first retry
        backoff_factor: Multiplier applied per additional retry
        transient_codes: Status codes worth retrying
    """

    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    transient_codes: FrozenSet[int] = field(default_factory=lambda: TRANSIENT_STATUS_CODES)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base < 0 or self.backoff_factor < 1:
            raise ValueError("backoff_base must be >= 0 and backoff_factor >= 1")

    def is_transient(self, error: Exception) -> bool:
        """Return True if the error is worth retrying."""
        if isinstance(error, DirectoryError):
            return error.status_code in self.transient_codes
        return isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout))

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.backoff_base * (self.backoff_factor ** (attempt - 1))


class RateLimitedExecutor:
    """
    Executes remote calls with pacing and retry.

    Every attempt is preceded by a fixed delay. Transient failures are retried
    with exponential backoff until the policy's attempt bound is exhausted, at
    which point the last error is re-raised for the caller to handle.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        call_delay: float = 0.0,
        batch_pause: float = 0.0,
        sleeper: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[Exception, int], None]] = None
    ):
        """
        Initialize the executor.

        Args:
            policy: Retry policy (defaults to RetryPolicy())
            call_delay: Seconds to wait before every attempt
            batch_pause: Seconds to wait between batches
            sleeper: Callable used for every wait
            on_retry: Optional hook called with (error, attempt) before a retry
        """
        self.policy = policy or RetryPolicy()
        self.call_delay = call_delay
        self.batch_pause = batch_pause
        self.sleeper = sleeper
        self.on_retry = on_retry
        self.calls = 0
        self.retries = 0

    def execute(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Execute a remote call under the retry policy.

        Returns:
            Whatever the call returns

        Raises:
            Exception: The call's error when it is permanent or retries are exhausted
        """
        attempt = 0
        while True:
            attempt += 1
            if self.call_delay > 0:
                self.sleeper(self.call_delay)
            self.calls += 1

            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.policy.is_transient(e):
                    raise
                if attempt >= self.policy.max_attempts:
                    logger.error(
                        f"Giving up on {getattr(func, '__name__', func)} after "
                        f"{attempt} attempts: {e}"
                    )
                    raise

                delay = self.policy.backoff(attempt)
                self.retries += 1
                logger.warning(
                    f"Transient error on {getattr(func, '__name__', func)} "
                    f"(attempt {attempt}/{self.policy.max_attempts}): {e}; retrying in {delay:.1f}s"
                )
                if self.on_retry:
                    self.on_retry(e, attempt)
                self.sleeper(delay)

    def batches(self, items: Iterable[T], batch_size: int) -> Iterator[List[T]]:
        """
        Yield fixed-size batches, pausing between consecutive batches.

        Args:
            items: Items to chunk
            batch_size: Items per batch (values below 1 mean a single batch)
        """
        items = list(items)
        if batch_size < 1:
            batch_size = max(len(items), 1)

        for i in range(0, len(items), batch_size):
            if i > 0 and self.batch_pause > 0:
                logger.debug(f"Pausing {self.batch_pause}s between batches")
                self.sleeper(self.batch_pause)
            yield items[i:i + batch_size]
