"""Unit tests for backoff calculation."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from damp.core.retry import RECONNECT_CONFIG, RetryConfig, calculate_delay


class TestCalculateDelay:
    def test_exponential_growth_without_jitter(self):
        config = RetryConfig(base_delay=1.0, max_delay=100.0, jitter=0.0)
        assert [calculate_delay(n, config) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert calculate_delay(10, config) == 5.0

    def test_huge_attempt_does_not_overflow(self):
        assert calculate_delay(10_000, RetryConfig(jitter=0.0)) == 60.0

    @given(attempt=st.integers(min_value=1, max_value=500))
    def test_jitter_stays_within_bounds(self, attempt):
        delay = calculate_delay(attempt, RECONNECT_CONFIG)
        assert 0.0 <= delay <= RECONNECT_CONFIG.max_delay * (1 + RECONNECT_CONFIG.jitter)


class TestRetryConfig:
    def test_unbounded_retries(self):
        assert RECONNECT_CONFIG.should_retry(1_000_000)

    @pytest.mark.parametrize(("attempt", "expected"), [(1, True), (3, True), (4, False)])
    def test_bounded_retries(self, attempt, expected):
        assert RetryConfig(max_retries=3).should_retry(attempt) is expected
