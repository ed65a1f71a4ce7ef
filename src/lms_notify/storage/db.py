"""
Инициализация базы данных и сессий SQLAlchemy.

Назначение:
- создание engine (лениво, чтобы импорт не требовал драйвера БД)
- контекстный менеджер для сессий
- единая точка доступа к БД для всех сервисов
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from lms_notify.common.config import get_settings

# Фабрика "with factory() as session" — так сервисы получают сессию
SessionScope = Callable[[], AbstractContextManager[Session]]

# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
_engine: Engine | None = None
_session_local: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_engine(get_settings().postgres_dsn, pool_pre_ping=True)
    return _engine


def _get_session_local() -> sessionmaker[Session]:
    global _session_local
    if _session_local is None:
        _session_local = sessionmaker(bind=get_engine(), autocommit=False, autoflush=False)
    return _session_local


def make_session_scope(factory: sessionmaker[Session]) -> SessionScope:
    """
    Оборачивает sessionmaker в транзакционный контекстный менеджер
    (commit при успехе, rollback при исключении).
    """

    @contextmanager
    def _scope() -> Iterator[Session]:
        session: Session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def db_session() -> Iterator[Session]:
    """
    Контекстный менеджер для работы с БД.

    Использование:
        with db_session() as session:
            session.add(...)
    """
    with make_session_scope(_get_session_local())() as session:
        yield session
