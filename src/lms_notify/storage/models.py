"""
ORM-модели базы данных.

Назначение:
- журнал исходящих сообщений (outbox): всё, что поставлено в очередь,
  и текущее состояние доставки
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from lms_notify.common.time import utc_now_naive
from lms_notify.domain.enums import MessageCategory, MessagePriority, MessageStatus


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


# =============================================================================
# MESSAGE LOG
# =============================================================================
class MessageLog(Base):
    """
    Одно исходящее сообщение и его состояние доставки.
    """

    __tablename__ = "message_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    destination: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    category: Mapped[MessageCategory] = mapped_column(
        Enum(MessageCategory), nullable=False, index=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[MessagePriority] = mapped_column(
        Enum(MessagePriority), default=MessagePriority.normal, nullable=False
    )
    status: Mapped[MessageStatus] = mapped_column(
        Enum(MessageStatus), default=MessageStatus.pending, nullable=False, index=True
    )

    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    transport_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # "metadata" зарезервировано в DeclarativeBase
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_message_logs_status_next_retry", "status", "next_retry_at"),
        Index("ix_message_logs_tenant_created", "tenant_id", "created_at"),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<MessageLog id={self.id} status={self.status} retry={self.retry_count}>"


# =============================================================================
# SNAPSHOT
# =============================================================================
@dataclass(frozen=True)
class MessageSnapshot:
    """
    Копия записи вне сессии: отправка идёт без открытой транзакции.
    """

    id: int
    destination: str
    tenant_id: str | None
    category: MessageCategory
    content: str
    priority: MessagePriority
    status: MessageStatus
    retry_count: int
    error: str | None
    meta: dict
    created_at: datetime

    @classmethod
    def from_record(cls, record: MessageLog) -> MessageSnapshot:
        return cls(
            id=record.id,
            destination=record.destination,
            tenant_id=record.tenant_id,
            category=MessageCategory(record.category),
            content=record.content,
            priority=MessagePriority(record.priority),
            status=MessageStatus(record.status),
            retry_count=int(record.retry_count or 0),
            error=record.error,
            meta=dict(record.meta or {}),
            created_at=record.created_at,
        )
