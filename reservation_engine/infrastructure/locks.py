# reservation_engine/infrastructure/locks.py

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from reservation_engine.domain.exceptions import ContentionError


logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """
    One mutex per key (session id, discount code id), created on demand.

    The row locks taken with SELECT ... FOR UPDATE serialize writers across
    processes on PostgreSQL; these serialize threads inside one process and
    cover backends that ignore FOR UPDATE. Acquisition is bounded: a waiter
    that cannot get the lock in time gets ContentionError instead of blocking
    forever.
    """

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self.timeout_seconds):
            logger.warning("Lock wait timed out for %s after %.1fs", key, self.timeout_seconds)
            raise ContentionError(key)
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def hold_all(self, *keys: str | None) -> Iterator[None]:
        """
        Acquires the given keys in argument order, skipping None.
        Callers pass keys in the fixed order session -> discount code.
        """
        acquired: list[threading.Lock] = []
        try:
            for key in keys:
                if key is None:
                    continue
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self.timeout_seconds):
                    logger.warning("Lock wait timed out for %s after %.1fs", key, self.timeout_seconds)
                    raise ContentionError(key)
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
