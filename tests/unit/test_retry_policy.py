# tests/unit/test_retry_policy.py

from datetime import datetime, timedelta, timezone

import pytest

from src.domain.retry_policy import backoff_delay_ms, calculate_next_retry, is_exhausted


def test_backoff_doubles_from_base():
    assert [backoff_delay_ms(n) for n in range(5)] == [5_000, 10_000, 20_000, 40_000, 80_000]


def test_backoff_is_capped():
    assert backoff_delay_ms(6) == 300_000
    assert backoff_delay_ms(50) == 300_000
    assert backoff_delay_ms(3, base_interval_ms=1_000, max_interval_ms=5_000) == 5_000


def test_backoff_strictly_increases_below_cap():
    delays = [backoff_delay_ms(n) for n in range(10)]

    below_cap = [delay for delay in delays if delay < 300_000]
    assert below_cap == sorted(set(below_cap))
    assert all(delay <= 300_000 for delay in delays)


def test_negative_execution_count_rejected():
    with pytest.raises(ValueError):
        backoff_delay_ms(-1)


def test_next_retry_is_relative_to_now():
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    assert calculate_next_retry(0, now=now) == now + timedelta(seconds=5)
    assert calculate_next_retry(2, now=now) == now + timedelta(seconds=20)
    assert calculate_next_retry(10, now=now) == now + timedelta(minutes=5)


def test_exhaustion_at_max_attempts():
    assert not is_exhausted(4)
    assert is_exhausted(5)
    assert is_exhausted(3, max_attempts=3)
