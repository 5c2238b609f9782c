# File: src/fleetpark/infrastructure/locking.py
"""
Critical-section locks

The availability check and the reservation insert must run as one unit
per parking lot, and status changes as one unit per reservation and
per assigned space, whose occupancy flag they update. A
LockProvider hands out a context manager per key:

    with locks.lock(f"reservation-lot:{lot_id}"):
        ...check, then insert...

InProcessLockProvider serializes threads of one process. RedisLockProvider
serializes every process sharing the Redis server. Failing to obtain a
lock within the timeout raises StorageUnavailableError, which the
lifecycle service retries.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import ContextManager, Dict, Iterator, Optional
import logging
import threading

import redis
from redis.exceptions import ConnectionError as RedisConnectionError, LockError

from ..domain.exceptions import StorageUnavailableError


def lot_lock_key(parking_lot_id: str) -> str:
    return f"reservation-lot:{parking_lot_id}"


def reservation_lock_key(reservation_id: str) -> str:
    return f"reservation:{reservation_id}"


def space_lock_key(parking_space_id: str) -> str:
    return f"reservation-space:{parking_space_id}"


class LockProvider(ABC):
    """Abstract base class for keyed mutual exclusion"""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def lock(self, key: str) -> ContextManager[None]:
        """Context manager holding the lock for ``key``"""
        pass


class InProcessLockProvider(LockProvider):
    """One threading.Lock per key, created on first use"""

    def __init__(self, timeout: float = 10.0):
        super().__init__(timeout)
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self.timeout):
            self._logger.warning(f"Timed out waiting for lock {key}")
            raise StorageUnavailableError(f"Timed out waiting for lock {key}", {"lock": key})
        try:
            yield
        finally:
            lock.release()


class RedisLockProvider(LockProvider):
    """
    Distributed lock backed by redis-py's Lock
    The lock expires after ``timeout`` seconds so a crashed holder cannot
    block the key forever
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        timeout: float = 10.0,
        blocking_timeout: Optional[float] = None,
        client: Optional[redis.Redis] = None,
        **kwargs
    ):
        super().__init__(timeout)
        self.redis_url = redis_url
        self.blocking_timeout = blocking_timeout if blocking_timeout is not None else timeout
        self.redis_client = client or redis.Redis.from_url(redis_url, **kwargs)

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        redis_lock = self.redis_client.lock(
            f"fleetpark:{key}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        try:
            acquired = redis_lock.acquire()
        except (LockError, RedisConnectionError) as e:
            self._logger.error(f"Error acquiring Redis lock {key}: {e}")
            raise StorageUnavailableError(f"Lock backend unavailable for {key}", {"lock": key}) from e

        if not acquired:
            self._logger.warning(f"Timed out waiting for Redis lock {key}")
            raise StorageUnavailableError(f"Timed out waiting for lock {key}", {"lock": key})

        try:
            yield
        finally:
            try:
                redis_lock.release()
            except LockError as e:
                # Lock expired before release; another holder may already own the key
                self._logger.warning(f"Redis lock {key} expired before release: {e}")

    def close(self):
        self.redis_client.close()
