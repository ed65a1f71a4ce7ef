"""
Генерация идентификаторов.

- cycle_id: сквозная трассировка цикла диспетчера в логах и ответе /queue/process
- lock owner: владелец распределённой блокировки single-flight
"""

from __future__ import annotations

import os
import secrets
import socket

from lms_notify.common.time import utc_now


def new_cycle_id() -> str:
    """
    cyc-<UTC YYYYMMDDTHHMMSS>-<8 hex>: сортируется по времени старта.
    """
    return f"cyc-{utc_now().strftime('%Y%m%dT%H%M%S')}-{secrets.token_hex(4)}"


def new_lock_owner() -> str:
    """host:pid:rand, чтобы release() не снял чужую блокировку."""
    return f"{socket.gethostname()}:{os.getpid()}:{secrets.token_hex(4)}"
