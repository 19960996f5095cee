"""
Reqflow error taxonomy.

Classification happens once, at the transport boundary. Every component
upstream of it (retry policy, batch coordinator, in-flight registry) treats
the resulting class as final.
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass


@dataclass(frozen=True)
class AttemptRecord:
    """
    One physical attempt made on behalf of a logical call.

    Parameters
    ----------
    number : int
        1-based attempt number.
    started_at : float
        Monotonic timestamp when the attempt was dispatched.
    duration : float
        Seconds spent in the attempt.
    error : str | None
        Failure class name, or ``None`` when the attempt succeeded.
    delay : float | None
        Backoff applied before the next attempt, if one was scheduled.
    """

    number: int
    started_at: float
    duration: float
    error: str | None = None
    delay: float | None = None


class ReqflowError(Exception):
    """
    Base class for every error surfaced by the orchestration layer.

    Parameters
    ----------
    message : str
        Human readable description.
    status : int | None, optional
        HTTP-like status code, when the failure came from a response.
    retry_after : float | None, optional
        Server supplied rate-limit hint, in seconds.
    """

    retryable: t.ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.retry_after = retry_after
        self.attempts: tuple[AttemptRecord, ...] = ()

    def with_attempts(self, attempts: t.Sequence[AttemptRecord]) -> "ReqflowError":
        """Attach attempt history for diagnostics and return ``self``."""
        self.attempts = tuple(attempts)
        return self


class ConfigurationError(ReqflowError):
    """Bad descriptor or configuration. Never retried."""


class NetworkError(ReqflowError):
    """Connection refused, reset, or timed out."""

    retryable = True

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class ServerError(ReqflowError):
    """5xx response."""

    retryable = True


class ClientError(ReqflowError):
    """4xx response other than an explicit rate limit."""


class RateLimitError(ReqflowError):
    """Rate-limited response. Retried only once its hint has elapsed."""

    retryable = True


class MalformedResponseError(ReqflowError):
    """Response body could not be decoded."""


class ProtocolMismatchError(ReqflowError):
    """The merge endpoint violated the batch sub-protocol."""


class BatchItemError(ReqflowError):
    """
    The merge endpoint reported a failure for one sub-request.

    Parameters
    ----------
    message : str
        Error description.
    detail : typing.Any, optional
        Raw ``error`` field from the batch response item.
    status : int | None, optional
        Status reported for the sub-request, if any.
    """

    def __init__(self, message: str, *, detail: t.Any = None, status: int | None = None) -> None:
        super().__init__(message, status=status)
        self.detail = detail


class QueueTimeoutError(ReqflowError):
    """The scheduler could not dispatch an entry before its deadline."""


class StorageQuotaError(ReqflowError):
    """The persistent storage tier refused a write for lack of space."""


class RequestCancelledError(ReqflowError):
    """A queued call was withdrawn by ``cancel_all`` before dispatch."""
