"""
Worker Retention.

Назначение:
- раз в RETENTION_INTERVAL_SEC (по умолчанию сутки) запускать retention_job
- удаляются только доставленные сообщения старше QUEUE_RETENTION_DAYS
"""

from __future__ import annotations

import time

from lms_notify.common.config import get_settings
from lms_notify.common.logging import get_project_logger, setup_logging
from lms_notify.jobs.retention_job import run as run_retention
from lms_notify.services.readiness import enforce_startup_readiness

log = get_project_logger()


def main() -> None:
    setup_logging()
    enforce_startup_readiness(service_name="worker-retention")
    settings = get_settings()
    interval_sec = max(60, int(settings.retention_interval_sec))

    log.info(
        "worker_retention_started",
        extra={
            "payload": {
                "enabled": bool(settings.retention_enabled),
                "interval_sec": interval_sec,
                "retention_days": int(settings.queue_retention_days),
            }
        },
    )

    while True:
        try:
            run_retention()
        except Exception as e:
            log.error(
                "worker_retention_error",
                extra={"payload": {"err": str(e)[:300]}},
            )
        time.sleep(interval_sec)


if __name__ == "__main__":
    main()
