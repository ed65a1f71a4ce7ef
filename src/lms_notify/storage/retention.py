"""
Логика ретеншна журнала сообщений.

Назначение:
- удаление успешно доставленных (sent) сообщений старше горизонта хранения
- failed/pending/retrying не удаляются никогда: они нужны для аудита и ретраев
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from lms_notify.common.config import get_settings
from lms_notify.common.time import to_naive_utc, utc_now_naive

from .repositories import MessageLogRepository


def retention_cutoff(now: datetime | None = None, days: int | None = None) -> datetime:
    settings = get_settings()
    horizon = int(days if days is not None else settings.queue_retention_days)
    base = to_naive_utc(now) if now is not None else utc_now_naive()
    return base - timedelta(days=max(1, horizon))


def apply_retention(session: Session, *, now: datetime | None = None) -> int:
    """
    Применение политики ретеншна. Возвращает число удалённых записей.
    """
    return MessageLogRepository(session).delete_sent_before(retention_cutoff(now))
