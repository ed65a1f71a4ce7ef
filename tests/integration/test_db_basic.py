from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker

from lms_notify.domain.enums import MessageCategory, MessagePriority, MessageStatus
from lms_notify.queue.dispatcher import QueueDispatcher
from lms_notify.queue.escalation import FailureEscalator
from lms_notify.queue.lock import SingleFlight
from lms_notify.queue.producer import enqueue
from lms_notify.services.statistics import QueueStatistics
from lms_notify.storage.db import make_session_scope
from lms_notify.transport.mock import MockTransport

ROOT = Path(__file__).resolve().parents[2]


def _alembic_config(url: str) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "src/lms_notify/storage/migrations"))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def test_migration_creates_schema_and_queue_works_end_to_end(tmp_path):
    url = f"sqlite:///{tmp_path / 'lms.db'}"
    command.upgrade(_alembic_config(url), "head")

    engine = create_engine(url)
    try:
        columns = {c["name"] for c in inspect(engine).get_columns("message_logs")}
        assert {
            "destination",
            "tenant_id",
            "status",
            "retry_count",
            "next_retry_at",
            "claimed_at",
            "transport_message_id",
            "metadata",
            "idempotency_key",
            "sent_at",
        } <= columns

        scope = make_session_scope(sessionmaker(bind=engine))
        enqueue(
            "chat-1", "low", MessageCategory.announcement, MessagePriority.low, session_scope=scope
        )
        enqueue(
            "chat-2", "high", MessageCategory.exam_start, MessagePriority.high, session_scope=scope
        )

        transport = MockTransport()
        dispatcher = QueueDispatcher(
            transport,
            scope,
            escalator=FailureEscalator(transport, []),
            guard=SingleFlight(),
            sleep_fn=lambda _: None,
        )
        result = dispatcher.run_cycle()

        assert result.sent == 2
        assert transport.attempts == ["chat-2", "chat-1"]
        stats = QueueStatistics(scope).get_statistics()
        assert stats.sent == 2
        assert stats.success_rate == 1.0
        sent_logs = QueueStatistics(scope).list_by_status(MessageStatus.sent, limit=10)
        assert sent_logs[0]["status"] == "sent"
    finally:
        engine.dispose()

    command.downgrade(_alembic_config(url), "base")
    engine = create_engine(url)
    try:
        assert "message_logs" not in inspect(engine).get_table_names()
    finally:
        engine.dispose()
