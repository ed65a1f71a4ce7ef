"""
Репозитории (DAO слой).

Правила:
- Никакой бизнес-логики
- Только CRUD и запросы
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ColumnElement, and_, case, delete, desc, func, or_, select, update
from sqlalchemy.orm import Session

from lms_notify.domain.enums import MessageCategory, MessagePriority, MessageStatus

from .models import MessageLog

# Строковый порядок enum != порядок приоритета, поэтому сортируем по рангу
PRIORITY_RANK = case(
    (MessageLog.priority == MessagePriority.high, MessagePriority.high.rank),
    (MessageLog.priority == MessagePriority.normal, MessagePriority.normal.rank),
    else_=MessagePriority.low.rank,
)


def _clamp_limit(limit: int, upper: int = 500) -> int:
    return max(1, min(int(limit), upper))


def eligible_clause(*, now: datetime, max_retries: int) -> ColumnElement[bool]:
    """
    Запись можно брать в работу: pending, либо failed с наступившим ретраем
    и не исчерпанным бюджетом.
    """
    return or_(
        MessageLog.status == MessageStatus.pending,
        and_(
            MessageLog.status == MessageStatus.failed,
            MessageLog.next_retry_at.is_not(None),
            MessageLog.next_retry_at <= now,
            MessageLog.retry_count < max_retries,
        ),
    )


# =============================================================================
# MESSAGE LOG REPOSITORY
# =============================================================================
class MessageLogRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # -------------------------------------------------------------------------
    # Запись
    # -------------------------------------------------------------------------
    def add(self, record: MessageLog) -> MessageLog:
        self.session.add(record)
        return record

    def add_all(self, records: list[MessageLog]) -> list[MessageLog]:
        self.session.add_all(records)
        return records

    def get(self, record_id: int) -> MessageLog | None:
        return self.session.get(MessageLog, record_id)

    def get_by_idempotency_key(self, key: str) -> MessageLog | None:
        return self.session.execute(
            select(MessageLog).where(MessageLog.idempotency_key == key)
        ).scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Выборка для диспетчера
    # -------------------------------------------------------------------------
    def select_eligible(
        self,
        *,
        now: datetime,
        limit: int,
        max_retries: int,
        tenant_id: str | None = None,
    ) -> list[MessageLog]:
        """
        Пачка записей к отправке: priority DESC, created_at ASC (FIFO внутри приоритета).
        """
        q = select(MessageLog).where(eligible_clause(now=now, max_retries=max_retries))
        if tenant_id is not None:
            q = q.where(MessageLog.tenant_id == tenant_id)
        q = q.order_by(
            desc(PRIORITY_RANK),
            MessageLog.created_at.asc(),
            MessageLog.id.asc(),
        ).limit(max(1, int(limit)))
        return list(self.session.execute(q).scalars().all())

    def claim(self, record_id: int, *, now: datetime, max_retries: int) -> bool:
        """
        Атомарный захват записи (optimistic locking): переводим в retrying,
        только если запись всё ещё пригодна. False — её уже забрал кто-то другой.
        """
        stmt = (
            update(MessageLog)
            .where(
                MessageLog.id == record_id,
                eligible_clause(now=now, max_retries=max_retries),
            )
            .values(status=MessageStatus.retrying, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def list_stale_retrying(
        self, *, cutoff: datetime, limit: int, tenant_id: str | None = None
    ) -> list[MessageLog]:
        """
        retrying-записи, "зависшие" после падения диспетчера.
        """
        q = select(MessageLog).where(
            MessageLog.status == MessageStatus.retrying,
            or_(MessageLog.claimed_at.is_(None), MessageLog.claimed_at < cutoff),
        )
        if tenant_id is not None:
            q = q.where(MessageLog.tenant_id == tenant_id)
        q = q.order_by(MessageLog.id.asc()).limit(max(1, int(limit)))
        return list(self.session.execute(q).scalars().all())

    # -------------------------------------------------------------------------
    # Статистика / мониторинг
    # -------------------------------------------------------------------------
    def _scoped(
        self,
        q,
        *,
        tenant_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ):
        if tenant_id is not None:
            q = q.where(MessageLog.tenant_id == tenant_id)
        if start is not None:
            q = q.where(MessageLog.created_at >= start)
        if end is not None:
            q = q.where(MessageLog.created_at <= end)
        return q

    def count(
        self,
        *,
        statuses: list[MessageStatus] | None = None,
        tenant_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        q = select(func.count(MessageLog.id))
        if statuses:
            q = q.where(MessageLog.status.in_(statuses))
        q = self._scoped(q, tenant_id=tenant_id, start=start, end=end)
        return int(self.session.execute(q).scalar_one())

    def count_by_status(
        self,
        *,
        tenant_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[MessageStatus, int]:
        q = select(MessageLog.status, func.count(MessageLog.id)).group_by(MessageLog.status)
        q = self._scoped(q, tenant_id=tenant_id, start=start, end=end)
        out = {status: 0 for status in MessageStatus}
        for status, cnt in self.session.execute(q).all():
            out[MessageStatus(status)] = int(cnt)
        return out

    def count_by_category(
        self,
        *,
        status: MessageStatus | None = None,
        tenant_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[MessageCategory, int]:
        q = select(MessageLog.category, func.count(MessageLog.id)).group_by(MessageLog.category)
        if status is not None:
            q = q.where(MessageLog.status == status)
        q = self._scoped(q, tenant_id=tenant_id, start=start, end=end)
        out = {category: 0 for category in MessageCategory}
        for category, cnt in self.session.execute(q).all():
            out[MessageCategory(category)] = int(cnt)
        return out

    def list_recent(
        self,
        *,
        limit: int = 50,
        status: MessageStatus | None = None,
        tenant_id: str | None = None,
    ) -> list[MessageLog]:
        q = select(MessageLog)
        if status is not None:
            q = q.where(MessageLog.status == status)
        q = self._scoped(q, tenant_id=tenant_id)
        q = q.order_by(desc(MessageLog.created_at), desc(MessageLog.id)).limit(_clamp_limit(limit))
        return list(self.session.execute(q).scalars().all())

    def list_terminal_failed(self, *, limit: int, tenant_id: str | None = None) -> list[MessageLog]:
        q = select(MessageLog).where(
            MessageLog.status == MessageStatus.failed,
            MessageLog.next_retry_at.is_(None),
        )
        q = self._scoped(q, tenant_id=tenant_id)
        q = q.order_by(MessageLog.id.asc()).limit(_clamp_limit(limit))
        return list(self.session.execute(q).scalars().all())

    # -------------------------------------------------------------------------
    # Ретеншн
    # -------------------------------------------------------------------------
    def delete_sent_before(self, cutoff: datetime) -> int:
        stmt = (
            delete(MessageLog)
            .where(
                MessageLog.status == MessageStatus.sent,
                MessageLog.sent_at.is_not(None),
                MessageLog.sent_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        return int(self.session.execute(stmt).rowcount or 0)
