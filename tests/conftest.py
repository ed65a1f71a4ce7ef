from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lms_notify.common.config import get_settings
from lms_notify.domain.enums import MessageCategory, MessagePriority, MessageStatus
from lms_notify.storage.db import make_session_scope
from lms_notify.storage.models import Base, MessageLog


class FakeClock:
    """
    Управляемое время для диспетчера: now() — naive UTC, monotonic() — секунды.
    sleep() двигает оба.
    """

    def __init__(self, start: datetime) -> None:
        self.current = start
        self.mono = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def sleep(self, sec: float) -> None:
        self.sleeps.append(sec)
        self.mono += sec
        self.current += timedelta(seconds=sec)

    def advance(self, **kwargs) -> None:
        delta = timedelta(**kwargs)
        self.current += delta
        self.mono += delta.total_seconds()


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture()
def session_scope(engine):
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    return make_session_scope(factory)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture()
def settings_snapshot():
    """
    Тесты меняют singleton настроек; здесь всё возвращается обратно.
    """
    s = get_settings()
    snapshot = s.model_dump()
    try:
        yield s
    finally:
        for k, v in snapshot.items():
            setattr(s, k, v)


@pytest.fixture()
def add_record(session_scope, clock):
    """
    Вставить запись журнала напрямую (минуя producer) с нужным состоянием.
    """

    def _add(**fields) -> int:
        values = {
            "destination": "chat-1",
            "content": "Привет",
            "category": MessageCategory.announcement,
            "priority": MessagePriority.normal,
            "status": MessageStatus.pending,
            "retry_count": 0,
            "meta": {"parse_mode": "HTML"},
            "created_at": clock.now(),
        }
        values.update(fields)
        with session_scope() as s:
            record = MessageLog(**values)
            s.add(record)
            s.flush()
            return record.id

    return _add


@pytest.fixture()
def load_record(session_scope):
    def _load(record_id: int) -> MessageLog | None:
        with session_scope() as s:
            record = s.get(MessageLog, record_id)
            if record is not None:
                s.expunge(record)
            return record

    return _load
