from __future__ import annotations

import redis

from lms_notify.queue.lock import RedisLease, SingleFlight


class _FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttl: dict[str, int] = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttl[key] = ex
        return True

    def eval(self, script, numkeys, key, owner):
        if self.store.get(key) == owner:
            del self.store[key]
            return 1
        return 0


class _DownRedis:
    def set(self, *args, **kwargs):
        raise redis.ConnectionError("down")


def test_local_guard_is_non_blocking():
    guard = SingleFlight()
    assert guard.acquire() is True
    assert guard.busy is True
    assert guard.acquire() is False
    guard.release()
    assert guard.busy is False


def test_hold_releases_on_error():
    guard = SingleFlight()
    try:
        with guard.hold() as acquired:
            assert acquired is True
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert guard.busy is False


def test_redis_lease_excludes_second_process():
    fake = _FakeRedis()
    first = SingleFlight(lease=RedisLease(key="lock:q", ttl_sec=60, client_factory=lambda: fake))
    second = SingleFlight(lease=RedisLease(key="lock:q", ttl_sec=60, client_factory=lambda: fake))

    assert first.acquire() is True
    assert fake.ttl["lock:q"] == 60
    assert second.acquire() is False
    assert second.busy is False

    first.release()
    assert "lock:q" not in fake.store
    assert second.acquire() is True


def test_lease_release_does_not_drop_foreign_lock():
    fake = _FakeRedis()
    lease = RedisLease(key="lock:q", ttl_sec=60, client_factory=lambda: fake)
    assert lease.acquire() is True
    fake.store["lock:q"] = "someone-else"
    lease.release()
    assert fake.store["lock:q"] == "someone-else"


def test_redis_outage_means_not_acquired():
    guard = SingleFlight(
        lease=RedisLease(key="lock:q", ttl_sec=60, client_factory=lambda: _DownRedis())
    )
    assert guard.acquire() is False
    assert guard.busy is False


def test_from_settings_modes(settings_snapshot):
    settings_snapshot.dispatcher_lock_mode = "local"
    assert SingleFlight.from_settings()._lease is None
    settings_snapshot.dispatcher_lock_mode = "redis"
    assert isinstance(SingleFlight.from_settings()._lease, RedisLease)
