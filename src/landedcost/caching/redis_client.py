"""Redis coordination for deployments running several API workers.

Keys:
- lc:session-lock:{session_id} → turn lock for one conversation (TTL: 60s)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import redis

from landedcost.dialogue.session_store import SessionBusyError

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
KEY_PREFIX = "lc"


class RedisClient:
    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.url = url or DEFAULT_REDIS_URL
        self._client = client if client is not None else redis.from_url(
            self.url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )

    @staticmethod
    def key(*parts: str) -> str:
        return ":".join((KEY_PREFIX, *parts))

    @contextmanager
    def distributed_lock(self, name: str, ttl: int = 60, wait: Optional[float] = None) -> Iterator[bool]:
        """Yield whether ``name`` was acquired within ``wait`` seconds; the lock expires after ``ttl``."""

        lock = self._client.lock(name, timeout=ttl, blocking_timeout=wait)
        acquired = bool(lock.acquire(blocking=True))
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except redis.exceptions.LockError:
                    logger.warning("Lock %s expired while held", name)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.exceptions.RedisError as exc:
            logger.warning("Redis unreachable at %s: %s", self.url, exc)
            return False


class RedisSessionLocks:
    """``SessionLockProvider`` shared by every worker pointing at the same Redis."""

    def __init__(self, client: RedisClient, lock_ttl: int = 60):
        self.client = client
        self.lock_ttl = lock_ttl

    @contextmanager
    def hold(self, session_id: str, timeout: float = 30.0) -> Iterator[None]:
        name = RedisClient.key("session-lock", session_id)
        with self.client.distributed_lock(name, ttl=self.lock_ttl, wait=timeout) as acquired:
            if not acquired:
                raise SessionBusyError(session_id)
            yield


_clients: dict[str, RedisClient] = {}


def get_redis_client(url: Optional[str] = None) -> RedisClient:
    """One shared client per URL."""

    resolved = url or DEFAULT_REDIS_URL
    if resolved not in _clients:
        _clients[resolved] = RedisClient(resolved)
    return _clients[resolved]
