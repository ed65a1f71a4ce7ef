"""
Инициальная миграция.

Создаёт таблицы:
- message_logs (журнал исходящих сообщений)
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_message_logs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "message_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("destination", sa.String(length=128), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=True),
        sa.Column(
            "category",
            sa.Enum(
                "exam_start",
                "attendance",
                "results",
                "payment",
                "announcement",
                "test_distribution",
                name="messagecategory",
            ),
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "priority",
            sa.Enum("high", "normal", "low", name="messagepriority"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "retrying", "sent", "failed", name="messagestatus"),
            nullable=False,
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("transport_message_id", sa.String(length=64), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_message_logs_destination", "message_logs", ["destination"])
    op.create_index("ix_message_logs_tenant_id", "message_logs", ["tenant_id"])
    op.create_index("ix_message_logs_category", "message_logs", ["category"])
    op.create_index("ix_message_logs_status", "message_logs", ["status"])
    op.create_index("ix_message_logs_next_retry_at", "message_logs", ["next_retry_at"])
    op.create_index(
        "ix_message_logs_status_next_retry", "message_logs", ["status", "next_retry_at"]
    )
    op.create_index(
        "ix_message_logs_tenant_created", "message_logs", ["tenant_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_message_logs_tenant_created", table_name="message_logs")
    op.drop_index("ix_message_logs_status_next_retry", table_name="message_logs")
    op.drop_index("ix_message_logs_next_retry_at", table_name="message_logs")
    op.drop_index("ix_message_logs_status", table_name="message_logs")
    op.drop_index("ix_message_logs_category", table_name="message_logs")
    op.drop_index("ix_message_logs_tenant_id", table_name="message_logs")
    op.drop_index("ix_message_logs_destination", table_name="message_logs")
    op.drop_table("message_logs")

    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS messagestatus")
        op.execute("DROP TYPE IF EXISTS messagepriority")
        op.execute("DROP TYPE IF EXISTS messagecategory")
