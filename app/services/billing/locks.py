"""Per-key in-process locks for billing writes.

Serializes work on one customer or one invoice period without a global lock.
Across processes the database row locks and unique constraints take over.
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, Lock] = {}
        self._refs: dict[str, int] = {}

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Acquire the locks for ``keys`` in sorted order to avoid deadlocks."""
        ordered = sorted(set(keys))
        acquired: list[str] = []
        try:
            for key in ordered:
                self._acquire(key)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    def _acquire(self, key: str) -> None:
        with self._guard:
            lock = self._locks.setdefault(key, Lock())
            self._refs[key] = self._refs.get(key, 0) + 1
        lock.acquire()

    def _release(self, key: str) -> None:
        with self._guard:
            lock = self._locks[key]
            lock.release()
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def active_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)


def customer_key(customer_id: object) -> str:
    return f"customer:{customer_id}"


def invoice_period_key(subscription_id: object, start: object, end: object) -> str:
    return f"invoice:{subscription_id}:{start}:{end}"


billing_locks = KeyedLocks()
