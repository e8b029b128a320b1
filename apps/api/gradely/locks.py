from __future__ import annotations

import logging
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis import Redis
from redis.exceptions import LockError, RedisError
from redis.lock import Lock as RedisLock

from gradely.config import GRADING_LOCK_TTL_SECONDS
from gradely.errors import GradingInProgressError
from gradely.observability import get_logger, log_event
from gradely.queue import redis_conn

logger = get_logger("gradely.locks")


def in_flight_key(assignment_id: int, user_id: int) -> str:
    return f"grading:in-flight:{assignment_id}:{user_id}"


class InFlightGuard:
    """At most one grading pass per key.

    Uses a Redis lock shared by API processes and workers. When Redis is not
    configured or not reachable the guard falls back to a process-local
    registry, which still serializes passes inside this process.
    """

    def __init__(self, redis_client: Redis | None = None, ttl_seconds: int = GRADING_LOCK_TTL_SECONDS) -> None:
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self._local_lock = threading.Lock()
        self._local_keys: set[str] = set()
        self._redis_locks: dict[str, RedisLock] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._acquire(key)
        try:
            yield
        finally:
            self._release(key, lock)

    def refresh(self, key: str) -> None:
        """Push the Redis lock for ``key`` back out to a full TTL.

        Long passes call this as they make progress so the lock cannot expire
        under them. Keys held through the local registry never expire.
        """
        lock = self._redis_locks.get(key)
        if lock is None:
            return
        try:
            lock.extend(self.ttl_seconds, replace_ttl=True)
        except LockError:
            log_event(logger, "lock.lost_before_refresh", level=logging.WARNING, key=key, ttl=self.ttl_seconds)
        except RedisError as exc:
            log_event(logger, "lock.refresh_failed", level=logging.WARNING, key=key, error=str(exc))

    def is_held(self, key: str) -> bool:
        with self._local_lock:
            if key in self._local_keys:
                return True
        if self.redis is None:
            return False
        try:
            return bool(self.redis.exists(key))
        except RedisError:
            return False

    def _acquire(self, key: str) -> RedisLock | None:
        if self.redis is not None:
            lock = self.redis.lock(key, timeout=self.ttl_seconds, blocking=False)
            try:
                acquired = lock.acquire(blocking=False)
            except RedisError as exc:
                log_event(logger, "lock.redis_unavailable", level=logging.WARNING, key=key, error=str(exc))
            else:
                if not acquired:
                    raise GradingInProgressError(key)
                self._redis_locks[key] = lock
                return lock

        with self._local_lock:
            if key in self._local_keys:
                raise GradingInProgressError(key)
            self._local_keys.add(key)
        return None

    def _release(self, key: str, lock: RedisLock | None) -> None:
        if lock is None:
            with self._local_lock:
                self._local_keys.discard(key)
            return
        self._redis_locks.pop(key, None)
        try:
            lock.release()
        except LockError:
            log_event(logger, "lock.expired_before_release", level=logging.WARNING, key=key, ttl=self.ttl_seconds)
        except RedisError as exc:
            log_event(logger, "lock.release_failed", level=logging.WARNING, key=key, error=str(exc))


grading_guard = InFlightGuard(redis_conn)
