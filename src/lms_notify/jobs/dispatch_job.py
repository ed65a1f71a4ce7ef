"""
Job диспетчера очереди.

Назначение:
- один тик воркера: один цикл диспетчера (если включён)
"""

from __future__ import annotations

from lms_notify.common.config import get_settings
from lms_notify.common.logging import get_project_logger
from lms_notify.common.metrics import track_stage_latency
from lms_notify.queue.dispatcher import CycleResult, QueueDispatcher, get_dispatcher

log = get_project_logger()


def run(dispatcher: QueueDispatcher | None = None) -> CycleResult | None:
    if not get_settings().dispatcher_enabled:
        log.info("dispatch_job_disabled")
        return None

    with track_stage_latency("worker-dispatcher", "dispatch_cycle"):
        return (dispatcher or get_dispatcher()).run_cycle()
