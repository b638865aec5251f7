# Copyright (c) Syntropy Systems
"""Tests for the retry policy."""

import random

import pytest

from casewise.errors import SystemicClassifierError, TransientClassifierError
from casewise.models.config import RetrySettings
from casewise.retry import RetryPolicy


def _policy(**kwargs) -> tuple[RetryPolicy, list[float]]:
    sleeps: list[float] = []
    kwargs.setdefault("jitter", 0.0)
    return RetryPolicy(sleep=sleeps.append, **kwargs), sleeps


class _Failing:
    def __init__(self, failures: int, error: BaseException) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self, value: str) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


class TestDelay:
    """Tests for the backoff schedule."""

    def test_exponential(self) -> None:
        policy, _ = _policy(base_delay=1.0, max_delay=30.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self) -> None:
        policy, _ = _policy(base_delay=1.0, max_delay=5.0)
        assert policy.delay_for(10) == 5.0

    def test_jitter_bounds(self) -> None:
        policy = RetryPolicy(base_delay=2.0, jitter=0.1, rng=random.Random(7))
        delays = [policy.delay_for(1) for _ in range(50)]
        assert all(1.8 <= d <= 2.2 for d in delays)
        assert len(set(delays)) > 1


class TestCall:
    """Tests for RetryPolicy.call."""

    def test_success_first_try(self) -> None:
        policy, sleeps = _policy()
        result = policy.call(lambda: "ok")

        assert result.ok
        assert result.value == "ok"
        assert result.attempts == 1
        assert sleeps == []

    def test_retries_transient(self) -> None:
        policy, sleeps = _policy(max_attempts=3, base_delay=0.5)
        fn = _Failing(2, TimeoutError("slow"))

        result = policy.call(fn, "done")

        assert result.ok
        assert result.value == "done"
        assert result.attempts == 3
        assert sleeps == [0.5, 1.0]

    def test_exhaustion_reported(self) -> None:
        """Test running out of attempts returns the last error instead of raising."""
        policy, sleeps = _policy(max_attempts=2)
        fn = _Failing(5, TransientClassifierError("bad json"))

        result = policy.call(fn, "never")

        assert not result.ok
        assert result.value is None
        assert result.attempts == 2
        assert isinstance(result.error, TransientClassifierError)
        assert fn.calls == 2
        assert len(sleeps) == 1

    def test_non_retryable_propagates(self) -> None:
        policy, sleeps = _policy(max_attempts=3)
        fn = _Failing(1, SystemicClassifierError("revoked"))

        with pytest.raises(SystemicClassifierError):
            policy.call(fn, "x")

        assert fn.calls == 1
        assert sleeps == []

    def test_connection_errors_retried(self) -> None:
        policy, _ = _policy(max_attempts=2)
        result = policy.call(_Failing(1, ConnectionResetError()), "x")
        assert result.ok

    def test_from_settings(self) -> None:
        settings = RetrySettings(max_attempts=5, base_delay=0.1, max_delay=2.0, jitter=0.0)
        policy = RetryPolicy.from_settings(settings)

        assert policy.max_attempts == 5
        assert policy.delay_for(3) == pytest.approx(0.4)
