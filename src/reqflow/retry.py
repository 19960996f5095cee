"""
Retry decisions with capped exponential backoff and jitter.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field

from reqflow.exceptions import AttemptRecord, RateLimitError, ReqflowError, ServerError


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


@dataclass
class RetryState:
    """
    Attempt bookkeeping for one logical call.

    ``attempts`` only grows and never exceeds ``max_attempts``.
    """

    max_attempts: int
    attempts: int = 0
    last_failure: BaseException | None = None
    next_eligible_at: float | None = None
    history: list[AttemptRecord] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def begin(self) -> int:
        """Count a new attempt and return its 1-based number."""
        if self.exhausted:
            raise RuntimeError(f"All {self.max_attempts} attempts already used")
        self.attempts += 1
        return self.attempts

    def record(
        self,
        *,
        started_at: float,
        error: BaseException | None = None,
        delay: float | None = None,
    ) -> AttemptRecord:
        record = AttemptRecord(
            number=self.attempts,
            started_at=started_at,
            duration=max(0.0, time.monotonic() - started_at),
            error=None if error is None else type(error).__name__,
            delay=delay,
        )
        self.history.append(record)
        if error is not None:
            self.last_failure = error
            self.next_eligible_at = None if delay is None else time.monotonic() + delay
        return record


class RetryPolicy:
    """
    Decide whether and when to re-attempt a failed call.

    Parameters
    ----------
    base_delay : float
        Delay before the first retry, in seconds.
    max_delay : float
        Ceiling applied to every computed delay.
    jitter_ratio : float, optional
        Upper bound of the random jitter, as a fraction of the delay.
    rng : random.Random | None, optional
        Random source, injectable for tests.
    """

    def __init__(
        self,
        *,
        base_delay: float,
        max_delay: float,
        jitter_ratio: float = 0.3,
        rng: random.Random | None = None,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    def backoff(self, attempt: int) -> float:
        """
        Compute the jittered delay after the ``attempt``-th failure (0-based).

        Returns
        -------
        float
            Delay within ``[0, max_delay]``.
        """
        delay = min(self._base_delay * (2**attempt), self._max_delay)
        jitter = self._rng.uniform(0.0, self._jitter_ratio * delay)
        return max(0.0, min(delay + jitter, self._max_delay))

    def should_retry(self, failure: BaseException, state: RetryState) -> RetryDecision:
        """
        Decide on a retry for ``failure``.

        Parameters
        ----------
        failure : BaseException
            Classified failure of the latest attempt.
        state : RetryState
            Attempts made so far, including the failed one.

        Returns
        -------
        RetryDecision
            ``retry=False`` once attempts are exhausted or the failure is not
            retryable.
        """
        if state.exhausted:
            return RetryDecision(retry=False)
        if not isinstance(failure, ReqflowError) or not failure.retryable:
            return RetryDecision(retry=False)

        hint = failure.retry_after
        if isinstance(failure, RateLimitError):
            if hint is None or hint > self._max_delay:
                return RetryDecision(retry=False)
            return RetryDecision(retry=True, delay=hint)
        if isinstance(failure, ServerError) and hint is not None:
            return RetryDecision(retry=True, delay=min(hint, self._max_delay))
        return RetryDecision(retry=True, delay=self.backoff(attempt=state.attempts - 1))
