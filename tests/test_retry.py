"""Tests for the backoff policy."""

import pytest

from syncbridge.config import RetryConfig
from syncbridge.sync.retry import RetryPolicy


class TestBackoff:
    def test_ceiling_doubles_up_to_cap(self):
        policy = RetryPolicy()
        ceilings = [policy.backoff_ceiling(n) for n in range(1, 9)]
        assert ceilings == [0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_full_jitter_scales_ceiling(self):
        policy = RetryPolicy(rng=lambda: 0.25)
        assert policy.delay(3) == 0.5

    def test_zero_jitter_is_allowed(self):
        assert RetryPolicy(rng=lambda: 0.0).delay(4) == 0.0

    def test_huge_attempt_does_not_overflow(self):
        assert RetryPolicy().backoff_ceiling(10_000) == 30.0

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryPolicy().backoff_ceiling(0)


class TestBounds:
    def test_should_retry_counts_first_attempt(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_single_attempt_never_retries(self):
        assert not RetryPolicy(max_attempts=1).should_retry(1)

    def test_budget_is_inclusive(self):
        policy = RetryPolicy(max_elapsed_seconds=10.0)
        assert policy.within_budget(8.0, 2.0)
        assert not policy.within_budget(8.0, 2.5)

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"base_delay_seconds": -1.0},
        {"max_elapsed_seconds": 0.0},
    ])
    def test_invalid_policy_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_from_config(self):
        config = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=5.0, max_attempts=3, max_elapsed_seconds=20.0)
        policy = RetryPolicy.from_config(config, rng=lambda: 1.0)
        assert policy.max_attempts == 3
        assert policy.delay(4) == 5.0
