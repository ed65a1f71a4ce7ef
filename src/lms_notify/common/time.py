"""
Утилиты времени.

Назначение:
- единый источник "сейчас" (UTC)
- в БД храним naive UTC (колонки DateTime без таймзоны)
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Текущее время в UTC (aware datetime).
    """
    return datetime.now(UTC)


def utc_now_naive() -> datetime:
    """
    Текущее время в UTC без tzinfo — формат хранения в БД.
    """
    return utc_now().replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """
    Приводит aware datetime к naive UTC; naive считается уже UTC.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
