from datetime import datetime, timedelta, timezone

DEFAULT_BASE_INTERVAL_MS = 5_000
DEFAULT_MAX_INTERVAL_MS = 300_000
DEFAULT_MAX_EXECUTION_ATTEMPTS = 5


def backoff_delay_ms(
    execution_count: int,
    base_interval_ms: int = DEFAULT_BASE_INTERVAL_MS,
    max_interval_ms: int = DEFAULT_MAX_INTERVAL_MS,
) -> int:
    """
    Exponential backoff: base * 2^execution_count, capped at max_interval_ms.
    """
    if execution_count < 0:
        raise ValueError("execution_count must be >= 0")

    delay = base_interval_ms
    for _ in range(execution_count):
        delay *= 2
        if delay >= max_interval_ms:
            return max_interval_ms
    return min(delay, max_interval_ms)


def calculate_next_retry(
    execution_count: int,
    base_interval_ms: int = DEFAULT_BASE_INTERVAL_MS,
    max_interval_ms: int = DEFAULT_MAX_INTERVAL_MS,
    now: datetime | None = None,
) -> datetime:
    now = now or datetime.now(timezone.utc)
    delay = backoff_delay_ms(execution_count, base_interval_ms, max_interval_ms)
    return now + timedelta(milliseconds=delay)


def is_exhausted(
    execution_count: int,
    max_attempts: int = DEFAULT_MAX_EXECUTION_ATTEMPTS,
) -> bool:
    return execution_count >= max_attempts
