"""
Доменные перечисления (enum).

Используются во всей системе:
- назначение сообщения (только для статистики и алертов)
- статус доставки
- приоритет в очереди
"""

from __future__ import annotations

import enum


class MessageCategory(str, enum.Enum):
    """
    Назначение сообщения. На логику доставки не влияет.
    """

    exam_start = "exam_start"
    attendance = "attendance"
    results = "results"
    payment = "payment"
    announcement = "announcement"
    test_distribution = "test_distribution"


class MessageStatus(str, enum.Enum):
    """
    Статус доставки сообщения.
    """

    pending = "pending"
    retrying = "retrying"
    sent = "sent"
    failed = "failed"


class MessagePriority(str, enum.Enum):
    """
    Приоритет в очереди. Порядок задаётся rank, а не строковым значением.
    """

    high = "high"
    normal = "normal"
    low = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    MessagePriority.high: 3,
    MessagePriority.normal: 2,
    MessagePriority.low: 1,
}
