"""
Single-flight guard для цикла диспетчера.

Назначение:
- в одном процессе одновременно выполняется не больше одного цикла
- при DISPATCHER_LOCK_MODE=redis ещё и lease в Redis (SET NX EX),
  чтобы API и воркер не гоняли циклы параллельно

Важно:
- захват неблокирующий: занято -> цикл пропускается, а не ставится в очередь
- lease снимается только своим владельцем (compare-and-delete)
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import redis

from lms_notify.common.config import get_settings
from lms_notify.common.ids import new_lock_owner
from lms_notify.common.logging import get_queue_logger

from .redis import redis_client

log = get_queue_logger()

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisLease:
    """
    Распределённая блокировка с TTL (на случай падения держателя).
    """

    def __init__(
        self,
        *,
        key: str,
        ttl_sec: int,
        client_factory: Callable[[], redis.Redis] = redis_client,
    ) -> None:
        self.key = key
        self.ttl_sec = max(1, int(ttl_sec))
        self._client_factory = client_factory
        self._owner: str | None = None

    def acquire(self) -> bool:
        owner = new_lock_owner()
        try:
            ok = self._client_factory().set(self.key, owner, nx=True, ex=self.ttl_sec)
        except redis.RedisError as e:
            log.error(
                "dispatcher_lock_error",
                extra={"payload": {"key": self.key, "op": "acquire", "err": str(e)[:200]}},
            )
            return False
        if ok:
            self._owner = owner
            return True
        return False

    def release(self) -> None:
        owner, self._owner = self._owner, None
        if owner is None:
            return
        try:
            self._client_factory().eval(_RELEASE_SCRIPT, 1, self.key, owner)
        except redis.RedisError as e:
            # lease истечёт сам по TTL
            log.warning(
                "dispatcher_lock_error",
                extra={"payload": {"key": self.key, "op": "release", "err": str(e)[:200]}},
            )


class SingleFlight:
    def __init__(self, *, lease: RedisLease | None = None) -> None:
        self._local = threading.Lock()
        self._lease = lease

    @classmethod
    def from_settings(cls) -> SingleFlight:
        s = get_settings()
        mode = (s.dispatcher_lock_mode or "local").strip().lower()
        if mode == "redis":
            lease = RedisLease(key=s.dispatcher_lock_key, ttl_sec=s.dispatcher_lock_ttl_sec)
            return cls(lease=lease)
        return cls()

    @property
    def busy(self) -> bool:
        return self._local.locked()

    def acquire(self) -> bool:
        if not self._local.acquire(blocking=False):
            return False
        if self._lease is not None and not self._lease.acquire():
            self._local.release()
            return False
        return True

    def release(self) -> None:
        if self._lease is not None:
            self._lease.release()
        self._local.release()

    @contextmanager
    def hold(self) -> Iterator[bool]:
        """
        with guard.hold() as acquired:
            if not acquired: ...  # цикл уже идёт
        """
        acquired = self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
