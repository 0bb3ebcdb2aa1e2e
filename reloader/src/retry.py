from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from kubernetes.client import ApiException

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backoff:
    """Bounded backoff for optimistic-concurrency retries.

    ``steps`` is the total number of attempts, so ``steps - 1`` sleeps happen
    at most.  Each sleep is ``duration`` grown by ``factor`` per step, capped
    at ``cap`` seconds, with up to ``jitter`` (as a fraction) added on top.
    """

    steps: int = 5
    duration: float = 0.01
    factor: float = 2.0
    jitter: float = 0.1
    cap: float = 1.0

    def __post_init__(self) -> None:
        if self.steps < 1:
            raise ValueError(f"steps must be >= 1, got: {self.steps}")
        if self.duration < 0:
            raise ValueError(f"duration must be >= 0, got: {self.duration}")
        if self.factor < 1.0:
            raise ValueError(f"factor must be >= 1.0, got: {self.factor}")

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry (``steps - 1`` values)."""
        current = self.duration
        for _ in range(self.steps - 1):
            delay = min(current, self.cap)
            if self.jitter > 0:
                delay += delay * self.jitter * random.random()  # noqa: S311
            yield delay
            current *= self.factor


@dataclass(frozen=True)
class RetryResult:
    """Terminal result of a bounded retry loop."""

    succeeded: bool
    attempts: int
    reason: str
    error: Exception | None = None


def is_conflict(exc: BaseException) -> bool:
    """Return True for a ``409 Conflict`` from the Kubernetes API."""
    return isinstance(exc, ApiException) and exc.status == 409


def retry_on_conflict(
    backoff: Backoff,
    operation: Callable[[], None],
    *,
    retriable: Callable[[BaseException], bool] = is_conflict,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> RetryResult:
    """Run ``operation`` until it succeeds, fails terminally, or attempts run out.

    Only exceptions accepted by ``retriable`` are retried.  Anything else ends
    the loop immediately and is returned as a failed result rather than
    raised, so callers always get exactly one verdict per call.
    """
    delays = backoff.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            operation()
        except Exception as exc:
            if not retriable(exc):
                return RetryResult(
                    succeeded=False,
                    attempts=attempt,
                    reason=f"non-retriable error: {exc}",
                    error=exc,
                )
            delay = next(delays, None)
            if delay is None:
                return RetryResult(
                    succeeded=False,
                    attempts=attempt,
                    reason=f"still conflicting after {attempt} attempt(s)",
                    error=exc,
                )
            LOGGER.debug("Attempt %d conflicted; retrying in %.3fs", attempt, delay)
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep(delay)
            continue
        return RetryResult(succeeded=True, attempts=attempt, reason="ok")
