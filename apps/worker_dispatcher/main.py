"""
Worker Dispatcher.

Назначение:
- каждые QUEUE_POLL_INTERVAL_SEC запускать цикл диспетчера очереди
- ошибка цикла не останавливает воркер: следующий тик по расписанию
"""

from __future__ import annotations

import time

from lms_notify.common.config import get_settings
from lms_notify.common.logging import get_project_logger, setup_logging
from lms_notify.jobs.dispatch_job import run as run_dispatch
from lms_notify.services.readiness import enforce_startup_readiness

log = get_project_logger()


def main() -> None:
    setup_logging()
    enforce_startup_readiness(service_name="worker-dispatcher")
    settings = get_settings()
    interval_sec = max(1, int(settings.queue_poll_interval_sec))

    log.info(
        "worker_dispatcher_started",
        extra={
            "payload": {
                "enabled": bool(settings.dispatcher_enabled),
                "interval_sec": interval_sec,
                "batch_size": int(settings.queue_batch_size),
                "lock_mode": settings.dispatcher_lock_mode,
                "transport": settings.transport_provider,
            }
        },
    )

    while True:
        try:
            run_dispatch()
        except Exception as e:
            log.error(
                "worker_dispatcher_error",
                extra={"payload": {"err": str(e)[:300]}},
            )
        time.sleep(interval_sec)


if __name__ == "__main__":
    main()
