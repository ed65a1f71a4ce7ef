"""
Статистика и ручные операции очереди.

Назначение:
- агрегаты по журналу сообщений (для админки и мониторинга)
- ручной перезапуск терминально упавших сообщений
- внеочередной запуск цикла диспетчера

Важно:
- все выборки с tenant_id фильтруются строгим равенством:
  записи без tenant_id в выборку центра не попадают
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from lms_notify.common.config import get_settings
from lms_notify.common.logging import get_queue_logger
from lms_notify.common.time import to_naive_utc
from lms_notify.domain.enums import MessageCategory, MessageStatus
from lms_notify.domain.state_machine import ensure_transition
from lms_notify.queue.dispatcher import CycleResult, QueueDispatcher, get_dispatcher
from lms_notify.storage.db import SessionScope, db_session
from lms_notify.storage.models import MessageLog
from lms_notify.storage.repositories import MessageLogRepository

log = get_queue_logger()

DEFAULT_LIST_LIMIT = 50


@dataclass
class QueueStats:
    total: int = 0
    sent: int = 0
    failed: int = 0
    pending: int = 0
    retrying: int = 0
    success_rate: float = 0.0
    by_category: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def message_to_dict(record: MessageLog) -> dict[str, Any]:
    return {
        "id": record.id,
        "destination": record.destination,
        "tenant_id": record.tenant_id,
        "category": MessageCategory(record.category).value,
        "content": record.content,
        "priority": record.priority.value,
        "status": MessageStatus(record.status).value,
        "retry_count": record.retry_count,
        "next_retry_at": record.next_retry_at,
        "transport_message_id": record.transport_message_id,
        "error": record.error,
        "metadata": dict(record.meta or {}),
        "created_at": record.created_at,
        "sent_at": record.sent_at,
    }


class QueueStatistics:
    def __init__(
        self,
        session_scope: SessionScope = db_session,
        *,
        dispatcher_factory: Callable[[], QueueDispatcher] = get_dispatcher,
        retry_failed_limit: int | None = None,
    ) -> None:
        self.session_scope = session_scope
        self._dispatcher_factory = dispatcher_factory
        self.retry_failed_limit = int(
            retry_failed_limit
            if retry_failed_limit is not None
            else get_settings().queue_retry_failed_limit
        )

    def get_statistics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        tenant_id: str | None = None,
    ) -> QueueStats:
        """
        Агрегаты за период по created_at. start/end применяются независимо.
        """
        start = to_naive_utc(start)
        end = to_naive_utc(end)
        with self.session_scope() as session:
            repo = MessageLogRepository(session)
            by_status = repo.count_by_status(tenant_id=tenant_id, start=start, end=end)
            by_category = repo.count_by_category(
                status=MessageStatus.sent, tenant_id=tenant_id, start=start, end=end
            )

        total = sum(by_status.values())
        sent = by_status[MessageStatus.sent]
        return QueueStats(
            total=total,
            sent=sent,
            failed=by_status[MessageStatus.failed],
            pending=by_status[MessageStatus.pending],
            retrying=by_status[MessageStatus.retrying],
            success_rate=(sent / total) if total else 0.0,
            by_category={category.value: cnt for category, cnt in by_category.items()},
        )

    def get_pending_count(self, tenant_id: str | None = None) -> int:
        """Ещё не доставлено и не упало: pending + retrying."""
        with self.session_scope() as session:
            return MessageLogRepository(session).count(
                statuses=[MessageStatus.pending, MessageStatus.retrying], tenant_id=tenant_id
            )

    def get_failed_count(self, tenant_id: str | None = None) -> int:
        with self.session_scope() as session:
            return MessageLogRepository(session).count(
                statuses=[MessageStatus.failed], tenant_id=tenant_id
            )

    def list_recent(
        self, limit: int = DEFAULT_LIST_LIMIT, tenant_id: str | None = None
    ) -> list[dict[str, Any]]:
        with self.session_scope() as session:
            records = MessageLogRepository(session).list_recent(limit=limit, tenant_id=tenant_id)
            return [message_to_dict(r) for r in records]

    def list_by_status(
        self,
        status: MessageStatus,
        limit: int = DEFAULT_LIST_LIMIT,
        tenant_id: str | None = None,
    ) -> list[dict[str, Any]]:
        with self.session_scope() as session:
            records = MessageLogRepository(session).list_recent(
                limit=limit, status=MessageStatus(status), tenant_id=tenant_id
            )
            return [message_to_dict(r) for r in records]

    def retry_failed(self, tenant_id: str | None = None) -> int:
        """
        Вернуть терминально упавшие сообщения в pending со свежим бюджетом ретраев.
        Не больше retry_failed_limit за вызов.
        """
        with self.session_scope() as session:
            records = MessageLogRepository(session).list_terminal_failed(
                limit=self.retry_failed_limit, tenant_id=tenant_id
            )
            for record in records:
                record.status = ensure_transition(
                    record.status, MessageStatus.pending, message_id=record.id
                )
                record.retry_count = 0
                record.next_retry_at = None
                record.claimed_at = None
                record.error = None
            ids = [r.id for r in records]

        log.info(
            "failed_messages_requeued",
            extra={"payload": {"tenant_id": tenant_id, "count": len(ids), "message_ids": ids}},
        )
        return len(ids)

    def trigger_cycle(self, tenant_id: str | None = None) -> CycleResult:
        """
        Внеочередной цикл диспетчера (single-flight действует и здесь).
        """
        log.info("dispatch_cycle_triggered", extra={"payload": {"tenant_id": tenant_id}})
        return self._dispatcher_factory().run_cycle(tenant_id=tenant_id)
