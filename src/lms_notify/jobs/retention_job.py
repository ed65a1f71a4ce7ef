"""
Фоновая job ретеншна.

Назначение:
- раз в сутки удалять доставленные сообщения старше QUEUE_RETENTION_DAYS
"""

from __future__ import annotations

from datetime import datetime

from lms_notify.common.config import get_settings
from lms_notify.common.logging import get_project_logger
from lms_notify.common.metrics import RETENTION_DELETED_TOTAL, track_stage_latency
from lms_notify.storage.db import SessionScope, db_session
from lms_notify.storage.retention import apply_retention

log = get_project_logger()


def run(
    *, session_scope: SessionScope = db_session, now: datetime | None = None
) -> int | None:
    if not get_settings().retention_enabled:
        log.info("retention_job_disabled")
        return None

    log.info("retention_job_started")
    with track_stage_latency("worker-retention", "retention"), session_scope() as s:
        deleted = apply_retention(s, now=now)
    RETENTION_DELETED_TOTAL.inc(deleted)
    log.info("retention_job_finished", extra={"payload": {"deleted": deleted}})
    return deleted
