from datetime import datetime, timedelta

from lms_notify.domain.enums import MessageStatus
from lms_notify.queue.retry import backoff_delay, can_retry, decide_failure

NOW = datetime(2026, 3, 2, 9, 0, 0)


def test_can_retry_bounds():
    assert can_retry(0)
    assert can_retry(2)
    assert not can_retry(3)
    assert not can_retry(1, max_retries=1)


def test_backoff_is_exponential_in_retry_count():
    assert backoff_delay(0) == timedelta(minutes=1)
    assert backoff_delay(1) == timedelta(minutes=2)
    assert backoff_delay(2) == timedelta(minutes=4)
    assert backoff_delay(3, base_sec=10) == timedelta(seconds=80)


def test_first_failure_schedules_retry_in_two_minutes():
    d = decide_failure(0, NOW)
    assert d.retry_count == 1
    assert d.status == MessageStatus.failed
    assert d.terminal is False
    assert d.next_retry_at == NOW + timedelta(minutes=2)


def test_third_failure_is_terminal():
    d = decide_failure(2, NOW)
    assert d.retry_count == 3
    assert d.terminal is True
    assert d.next_retry_at is None


def test_backoff_deltas_are_non_decreasing():
    deltas = []
    count = 0
    while True:
        d = decide_failure(count, NOW, max_retries=6, base_sec=30)
        if d.terminal:
            break
        deltas.append(d.next_retry_at - NOW)
        count = d.retry_count
    assert len(deltas) == 5
    assert deltas == sorted(deltas)
    assert deltas[0] == timedelta(seconds=60)


def test_non_retryable_error_goes_terminal_immediately():
    d = decide_failure(0, NOW, retryable=False)
    assert d.terminal is True
    assert d.retry_count == 1
    assert d.next_retry_at is None
