"""Tests for the reconnect backoff policy."""

import random

import pytest

from chatters.sync.backoff import BackoffPolicy


class TestBackoffPolicy:
    """Tests for BackoffPolicy."""

    def test_exponential_growth_capped(self) -> None:
        policy = BackoffPolicy(initial=1.0, maximum=5.0, multiplier=2.0, jitter=0.0)
        assert [policy.delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_spread(self) -> None:
        policy = BackoffPolicy(initial=10.0, maximum=10.0, jitter=0.2)
        rng = random.Random(1)
        for _ in range(50):
            assert 8.0 <= policy.delay(3, rng) <= 12.0

    def test_huge_attempt_numbers_do_not_overflow(self) -> None:
        policy = BackoffPolicy(initial=1.0, maximum=30.0, multiplier=10.0, jitter=0.0)
        assert policy.delay(10_000) == 30.0

    def test_delays_respect_attempt_budget(self) -> None:
        policy = BackoffPolicy(jitter=0.0, max_attempts=3)
        assert len(list(policy.delays())) == 3

    @pytest.mark.parametrize(
        "kwargs",
        [{"initial": -1}, {"multiplier": 0.5}, {"jitter": 1.0}, {"max_attempts": -1}],
    )
    def test_rejects_invalid_settings(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)
