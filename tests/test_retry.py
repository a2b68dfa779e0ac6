"""
Tests for model call retry with backoff.
"""

import random

import pytest

from agent_runtime.agent.retry import RetryPolicy, call_with_retry
from agent_runtime.config import AgentConfig
from agent_runtime.errors import ErrorKind, ModelCallError, OperationCancelled


class FlakyOperation:
    """Fails ``failures`` times with ``error`` and then returns ``"ok"``."""

    def __init__(self, failures: int, error: Exception | None = None):
        self.failures = failures
        self.error = error or ModelCallError(ErrorKind.NETWORK_ERROR, "connection reset")
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error
        return "ok"


def test_backoff_bounds():
    """Test the delay window doubles per retry and is capped."""
    policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter_factor=0.2)

    assert policy.backoff_bounds(0) == pytest.approx((0.8, 1.2))
    assert policy.backoff_bounds(2) == pytest.approx((3.2, 4.8))
    assert policy.backoff_bounds(10) == pytest.approx((8.0, 12.0))


def test_compute_delay_within_bounds():
    """Test jittered delays stay inside the bounds."""
    policy = RetryPolicy(jitter_factor=0.5)
    rng = random.Random(7)

    for attempt in range(5):
        low, high = policy.backoff_bounds(attempt)
        for _ in range(20):
            assert low <= policy.compute_delay(attempt, rng=rng) <= high


def test_retry_after_wins_when_longer():
    """Test a provider retry-after hint raises the delay."""
    policy = RetryPolicy(base_delay=1.0, jitter_factor=0.0)

    assert policy.compute_delay(0, retry_after=30.0) == 30.0
    assert policy.compute_delay(0, retry_after=0.1) == 1.0


def test_from_config():
    """Test the policy is read from AgentConfig."""
    policy = RetryPolicy.from_config(AgentConfig(max_retries=7, base_delay=0.5, max_delay=2.0, jitter_factor=0.1))

    assert policy == RetryPolicy(max_retries=7, base_delay=0.5, max_delay=2.0, jitter_factor=0.1)


@pytest.mark.asyncio
@pytest.mark.parametrize("failures", [0, 1, 2])
async def test_succeeds_with_fewer_failures_than_attempts(failures, recording_sleep):
    """Test k < max_retries transient failures still succeed."""
    policy = RetryPolicy(max_retries=3)
    operation = FlakyOperation(failures)
    retries = []

    result = await call_with_retry(
        operation, policy, sleep=recording_sleep, rng=random.Random(1),
        on_retry=lambda attempt, delay, error: retries.append((attempt, delay, error.kind)),
    )

    assert result == "ok"
    assert operation.attempts == failures + 1
    assert len(recording_sleep.delays) == failures
    for n, delay in enumerate(recording_sleep.delays):
        low, high = policy.backoff_bounds(n)
        assert low <= delay <= high
    assert [r[0] for r in retries] == list(range(1, failures + 1))


@pytest.mark.asyncio
@pytest.mark.parametrize("failures", [3, 5])
async def test_exhausted_after_max_attempts(failures, recording_sleep):
    """Test k >= max_retries transient failures raise RETRIES_EXHAUSTED."""
    policy = RetryPolicy(max_retries=3)
    operation = FlakyOperation(failures, ModelCallError(ErrorKind.RATE_LIMITED, "429", provider="openai"))

    with pytest.raises(ModelCallError) as exc_info:
        await call_with_retry(operation, policy, sleep=recording_sleep)

    error = exc_info.value
    assert error.kind is ErrorKind.RETRIES_EXHAUSTED
    assert error.details["last_kind"] == "RATE_LIMITED"
    assert error.details["attempts"] == 3
    assert error.details["provider"] == "openai"
    assert operation.attempts == 3
    assert len(recording_sleep.delays) == 2


@pytest.mark.asyncio
async def test_non_transient_not_retried(recording_sleep):
    """Test permanent errors propagate immediately."""
    operation = FlakyOperation(1, ModelCallError(ErrorKind.AUTHENTICATION_ERROR, "bad key"))

    with pytest.raises(ModelCallError) as exc_info:
        await call_with_retry(operation, RetryPolicy(max_retries=5), sleep=recording_sleep)

    assert exc_info.value.kind is ErrorKind.AUTHENTICATION_ERROR
    assert operation.attempts == 1
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_untyped_errors_are_classified(recording_sleep):
    """Test plain exceptions are classified before deciding to retry."""
    operation = FlakyOperation(1, ConnectionResetError("reset by peer"))

    assert await call_with_retry(operation, RetryPolicy(max_retries=2), sleep=recording_sleep) == "ok"

    failing = FlakyOperation(1, ValueError("unexpected payload"))
    with pytest.raises(ModelCallError) as exc_info:
        await call_with_retry(failing, RetryPolicy(max_retries=2), sleep=recording_sleep)
    assert exc_info.value.kind is ErrorKind.UNKNOWN
    assert isinstance(exc_info.value.__cause__, ValueError)


@pytest.mark.asyncio
async def test_retry_after_honored(recording_sleep):
    """Test the sleep uses the provider's retry-after hint."""
    error = ModelCallError(ErrorKind.RATE_LIMITED, "slow down", retry_after=42.0)

    await call_with_retry(FlakyOperation(1, error), RetryPolicy(max_retries=2), sleep=recording_sleep)

    assert recording_sleep.delays == [42.0]


@pytest.mark.asyncio
async def test_cancellation_not_retried(recording_sleep):
    """Test cancellation passes straight through."""
    operation = FlakyOperation(1, OperationCancelled())

    with pytest.raises(OperationCancelled):
        await call_with_retry(operation, RetryPolicy(max_retries=5), sleep=recording_sleep)

    assert operation.attempts == 1
