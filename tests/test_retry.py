import random

import pytest

from reqflow.exceptions import (
    ClientError,
    ConfigurationError,
    MalformedResponseError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from reqflow.retry import RetryPolicy, RetryState


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(base_delay=0.1, max_delay=1.0, jitter_ratio=0.3, rng=random.Random(7))


def failed_state(*, max_attempts: int = 3, attempts: int = 1) -> RetryState:
    state = RetryState(max_attempts=max_attempts)
    for _ in range(attempts):
        state.begin()
    return state


def test_backoff_grows_and_is_capped(policy: RetryPolicy):
    for attempt in range(10):
        delay = policy.backoff(attempt)
        base = min(0.1 * 2**attempt, 1.0)
        assert base <= delay <= min(base * 1.3, 1.0)
    assert policy.backoff(20) == 1.0


def test_backoff_without_jitter_is_exact():
    policy = RetryPolicy(base_delay=0.2, max_delay=5.0, jitter_ratio=0)
    assert [policy.backoff(attempt) for attempt in range(3)] == [0.2, 0.4, 0.8]


@pytest.mark.parametrize("failure", [NetworkError("reset"), ServerError("503", status=503)])
def test_transient_failures_are_retried(policy: RetryPolicy, failure):
    decision = policy.should_retry(failure, failed_state())
    assert decision.retry is True
    assert 0.1 <= decision.delay <= 0.13


@pytest.mark.parametrize(
    "failure",
    [
        ClientError("404", status=404),
        MalformedResponseError("bad json"),
        ConfigurationError("bad"),
        ValueError("not classified"),
    ],
)
def test_permanent_failures_are_not_retried(policy: RetryPolicy, failure):
    assert policy.should_retry(failure, failed_state()).retry is False


def test_exhausted_state_stops_retrying(policy: RetryPolicy):
    state = failed_state(max_attempts=2, attempts=2)
    assert state.exhausted
    assert policy.should_retry(NetworkError("reset"), state).retry is False
    with pytest.raises(RuntimeError):
        state.begin()


def test_rate_limit_waits_for_hint(policy: RetryPolicy):
    decision = policy.should_retry(RateLimitError("429", status=429, retry_after=0.5), failed_state())
    assert decision.retry is True
    assert decision.delay == 0.5


@pytest.mark.parametrize("retry_after", [None, 30.0])
def test_rate_limit_without_usable_hint_is_surfaced(policy: RetryPolicy, retry_after):
    failure = RateLimitError("429", status=429, retry_after=retry_after)
    assert policy.should_retry(failure, failed_state()).retry is False


def test_server_error_hint_is_capped(policy: RetryPolicy):
    decision = policy.should_retry(ServerError("503", status=503, retry_after=60), failed_state())
    assert decision.delay == 1.0


def test_state_records_history():
    state = RetryState(max_attempts=3)
    state.begin()
    state.record(started_at=0.0, error=ServerError("503"), delay=0.2)
    state.begin()
    record = state.record(started_at=0.0)

    assert [entry.error for entry in state.history] == ["ServerError", None]
    assert state.history[0].delay == 0.2
    assert record.number == 2
    assert isinstance(state.last_failure, ServerError)
