"""
Постановка сообщений в очередь (outbox).

Назначение:
- единственная точка, через которую бизнес-логика LMS отправляет уведомления
- запись фиксируется в БД до возврата управления, отправку делает диспетчер

Важно:
- синхронной доставки нет: enqueue только пишет pending-запись
- дедупликации по содержимому нет; idempotency_key — опционально
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from lms_notify.common.config import get_settings
from lms_notify.common.errors import StoreError, ValidationError
from lms_notify.common.logging import get_queue_logger
from lms_notify.common.metrics import QUEUE_ENQUEUED_TOTAL
from lms_notify.domain.enums import MessageCategory, MessagePriority, MessageStatus
from lms_notify.storage.db import SessionScope, db_session
from lms_notify.storage.models import MessageLog
from lms_notify.storage.repositories import MessageLogRepository

log = get_queue_logger()


@dataclass
class EnqueueRequest:
    destination: str
    content: str
    category: MessageCategory
    priority: MessagePriority = MessagePriority.normal
    tenant_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    parse_mode: str | None = None
    idempotency_key: str | None = None


def _validate(req: EnqueueRequest) -> None:
    if not (req.destination or "").strip():
        raise ValidationError("Пустой destination", {"field": "destination"})
    if not (req.content or "").strip():
        raise ValidationError("Пустой content", {"field": "content"})
    try:
        MessageCategory(req.category)
        MessagePriority(req.priority)
    except ValueError as e:
        raise ValidationError("Неизвестная категория или приоритет", {"err": str(e)}) from e


def _build_record(req: EnqueueRequest) -> MessageLog:
    meta = dict(req.metadata or {})
    meta.setdefault("parse_mode", req.parse_mode or get_settings().telegram_default_parse_mode)
    return MessageLog(
        destination=req.destination.strip(),
        content=req.content,
        category=MessageCategory(req.category),
        priority=MessagePriority(req.priority),
        status=MessageStatus.pending,
        retry_count=0,
        tenant_id=req.tenant_id,
        meta=meta,
        idempotency_key=req.idempotency_key,
    )


def _log_enqueued(record: MessageLog) -> None:
    QUEUE_ENQUEUED_TOTAL.labels(
        category=record.category.value, priority=record.priority.value
    ).inc()
    log.info(
        "message_enqueued",
        extra={
            "payload": {
                "message_id": record.id,
                "tenant_id": record.tenant_id,
                "category": record.category.value,
                "priority": record.priority.value,
            }
        },
    )


def _log_deduplicated(record: MessageLog) -> None:
    log.info(
        "message_enqueue_deduplicated",
        extra={"payload": {"message_id": record.id, "tenant_id": record.tenant_id}},
    )


def _insert(
    session: Session, requests: list[EnqueueRequest]
) -> tuple[list[MessageLog], list[MessageLog]]:
    repo = MessageLogRepository(session)
    out: list[MessageLog] = []
    fresh: list[MessageLog] = []
    # autoflush выключен: повтор ключа внутри пачки БД ещё не видит
    by_key: dict[str, MessageLog] = {}
    for req in requests:
        key = req.idempotency_key
        if key:
            existing = by_key.get(key) or repo.get_by_idempotency_key(key)
            if existing is not None:
                if existing not in fresh:
                    _log_deduplicated(existing)
                by_key[key] = existing
                out.append(existing)
                continue
        record = _build_record(req)
        repo.add(record)
        fresh.append(record)
        out.append(record)
        if key:
            by_key[key] = record
    session.flush()
    return out, fresh


def enqueue_many(
    requests: Iterable[EnqueueRequest],
    *,
    session_scope: SessionScope = db_session,
) -> list[MessageLog]:
    """
    Поставить пачку сообщений одной транзакцией: либо все, либо ничего.

    Если параллельный вызов успел записать тот же idempotency_key, пачка
    откатывается и перечитывается в новой сессии: вернётся запись победителя.
    """
    items = list(requests)
    for req in items:
        _validate(req)
    if not items:
        return []

    has_keys = any(req.idempotency_key for req in items)
    attempts = 2 if has_keys else 1
    for attempt in range(1, attempts + 1):
        try:
            with session_scope() as session:
                records, fresh = _insert(session, items)
                # после commit атрибуты протухают, а сессия закрывается
                session.expunge_all()
            break
        except IntegrityError as e:
            if attempt < attempts:
                log.info(
                    "message_enqueue_key_conflict",
                    extra={"payload": {"batch_size": len(items), "err": str(e.orig)[:200]}},
                )
                continue
            raise StoreError("Конфликт при записи в журнал", {"err": str(e.orig)[:300]}) from e
        except SQLAlchemyError as e:
            raise StoreError("Не удалось записать сообщения", {"err": str(e)[:300]}) from e
    for record in fresh:
        _log_enqueued(record)
    return records


def enqueue(
    destination: str,
    content: str,
    category: MessageCategory,
    priority: MessagePriority = MessagePriority.normal,
    *,
    tenant_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    parse_mode: str | None = None,
    idempotency_key: str | None = None,
    session_scope: SessionScope = db_session,
) -> MessageLog:
    """
    Поставить одно сообщение в очередь. Возвращает созданную (или найденную
    по idempotency_key) запись.
    """
    req = EnqueueRequest(
        destination=destination,
        content=content,
        category=category,
        priority=priority,
        tenant_id=tenant_id,
        metadata=dict(metadata or {}),
        parse_mode=parse_mode,
        idempotency_key=idempotency_key,
    )
    return enqueue_many([req], session_scope=session_scope)[0]
