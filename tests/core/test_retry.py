"""
Tests for the shared retry/backoff policy.
"""

import random

import pytest

from studyflow.core.errors import PermanentExternalError, TransientExternalError
from studyflow.core.retry import MIN_DELAY_SECONDS, RetryPolicy


class TestComputeDelay:
    """Backoff curve: base * multiplier ** attempt, jittered and clamped."""

    def test_grows_exponentially_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, jitter=0.0, max_delay=300.0)
        assert [policy.compute_delay(a) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_clamped_to_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, jitter=0.25, max_delay=30.0)
        for attempt in range(10, 40):
            assert policy.compute_delay(attempt) <= 30.0

    def test_huge_attempt_does_not_overflow(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=10.0, jitter=0.0, max_delay=60.0)
        assert policy.compute_delay(10_000) == 60.0

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay=4.0, multiplier=1.0, jitter=0.25, max_delay=300.0)
        rng = random.Random(7)
        delays = [policy.compute_delay(0, rng=rng) for _ in range(200)]
        assert all(3.0 <= d <= 5.0 for d in delays)
        assert len(set(delays)) > 1

    def test_never_below_minimum(self):
        policy = RetryPolicy(base_delay=0.001, multiplier=1.0, jitter=0.0, max_delay=1.0)
        assert policy.compute_delay(0) == MIN_DELAY_SECONDS

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"jitter": 1.0},
            {"base_delay": 0},
            {"multiplier": 0.5},
        ],
    )
    def test_rejects_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


@pytest.mark.asyncio
class TestCall:
    """Retrying only what the predicate calls retryable."""

    async def test_retries_transient_then_succeeds(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0.01, multiplier=1.0, jitter=0.0, max_delay=0.01)
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientExternalError("rate limited")
            return "ok"

        assert await policy.call(flaky) == "ok"
        assert len(calls) == 3

    async def test_permanent_error_is_not_retried(self):
        policy = RetryPolicy(max_attempts=5, base_delay=0.01, multiplier=1.0, jitter=0.0, max_delay=0.01)
        calls = []

        async def broken():
            calls.append(1)
            raise PermanentExternalError("bad request")

        with pytest.raises(PermanentExternalError):
            await policy.call(broken)
        assert len(calls) == 1

    async def test_reraises_after_exhausting_attempts(self):
        policy = RetryPolicy(max_attempts=2, base_delay=0.01, multiplier=1.0, jitter=0.0, max_delay=0.01)
        calls = []

        async def down():
            calls.append(1)
            raise TransientExternalError("503")

        with pytest.raises(TransientExternalError):
            await policy.call(down)
        assert len(calls) == 2

    async def test_passes_arguments_through(self):
        policy = RetryPolicy(max_attempts=1)

        async def add(a, b=0):
            return a + b

        assert await policy.call(add, 2, b=3) == 5
