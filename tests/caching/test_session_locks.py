from contextlib import contextmanager

import pytest
import redis

from landedcost.caching import RedisClient, RedisSessionLocks
from landedcost.dialogue.session_store import SessionBusyError


class FakeLockClient:
    def __init__(self, grant=True):
        self.grant = grant
        self.requests = []

    @contextmanager
    def distributed_lock(self, name, ttl=60, wait=None):
        self.requests.append((name, ttl, wait))
        yield self.grant


class FakeLock:
    def __init__(self, grant, expire_early=False):
        self.grant = grant
        self.expire_early = expire_early
        self.released = False

    def acquire(self, blocking=True):
        return self.grant

    def release(self):
        if self.expire_early:
            raise redis.exceptions.LockError("expired")
        self.released = True


class FakeRedis:
    def __init__(self, lock):
        self._lock = lock
        self.calls = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.calls.append((name, timeout, blocking_timeout))
        return self._lock

    def ping(self):
        raise redis.exceptions.ConnectionError("refused")


def test_lock_is_namespaced_per_session():
    client = FakeLockClient()
    locks = RedisSessionLocks(client, lock_ttl=45)

    with locks.hold("abc", timeout=2.5):
        pass

    assert client.requests == [("lc:session-lock:abc", 45, 2.5)]


def test_unacquired_lock_means_busy():
    locks = RedisSessionLocks(FakeLockClient(grant=False))
    with pytest.raises(SessionBusyError):
        with locks.hold("abc", timeout=0.1):
            pass


def test_distributed_lock_releases_after_use():
    lock = FakeLock(grant=True)
    backend = FakeRedis(lock)
    client = RedisClient("redis://cache.test/0", client=backend)

    with client.distributed_lock("lc:x", ttl=10, wait=1.0) as acquired:
        assert acquired is True

    assert lock.released is True
    assert backend.calls == [("lc:x", 10, 1.0)]


def test_expired_lock_release_is_tolerated():
    client = RedisClient("redis://cache.test/0", client=FakeRedis(FakeLock(grant=True, expire_early=True)))
    with client.distributed_lock("lc:x") as acquired:
        assert acquired


def test_ping_reports_unreachable_server():
    client = RedisClient("redis://cache.test/0", client=FakeRedis(FakeLock(grant=False)))
    assert client.ping() is False
