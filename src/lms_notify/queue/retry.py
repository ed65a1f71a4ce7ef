"""
Политика ретраев и backoff для исходящих сообщений.

Назначение:
- решить, что делать с записью после неудачной попытки отправки
- экспоненциальный backoff: base * 2**retry_count (без jitter)

Пример для значений по умолчанию (max=3, base=60с):
- 1-я ошибка -> retry_count=1, повтор через 2 мин
- 2-я ошибка -> retry_count=2, повтор через 4 мин
- 3-я ошибка -> retry_count=3, терминальный failed, эскалация

Важно:
- чистые функции, без БД и без sleep: время ожидания "хранится" в next_retry_at
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from lms_notify.domain.enums import MessageStatus

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_SEC = 60


@dataclass(frozen=True)
class FailureDecision:
    retry_count: int
    status: MessageStatus
    next_retry_at: datetime | None
    terminal: bool


def can_retry(retry_count: int, max_retries: int = DEFAULT_MAX_RETRIES) -> bool:
    return int(retry_count) < int(max_retries)


def backoff_delay(retry_count: int, base_sec: int = DEFAULT_BACKOFF_BASE_SEC) -> timedelta:
    """
    Задержка перед следующей попыткой.
    """
    return timedelta(seconds=int(base_sec) * (2 ** max(0, int(retry_count))))


def decide_failure(
    retry_count: int,
    now: datetime,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_sec: int = DEFAULT_BACKOFF_BASE_SEC,
    retryable: bool = True,
) -> FailureDecision:
    """
    Учесть неудачную попытку: увеличить счётчик и запланировать повтор
    или перевести запись в терминальный failed.

    retryable=False — транспорт считает ошибку постоянной, повтор не планируем.
    """
    new_count = int(retry_count) + 1
    if retryable and can_retry(new_count, max_retries):
        return FailureDecision(
            retry_count=new_count,
            status=MessageStatus.failed,
            next_retry_at=now + backoff_delay(new_count, base_sec),
            terminal=False,
        )
    return FailureDecision(
        retry_count=new_count,
        status=MessageStatus.failed,
        next_retry_at=None,
        terminal=True,
    )
