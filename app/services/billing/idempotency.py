"""Idempotency records: at-most-once side effects for a caller-supplied key.

Records live in Redis (``SET NX EX`` reserves a key) with an in-memory
``TTLCache`` used when Redis is not configured or stops answering, the same
fallback the rate limiter uses.
"""
from __future__ import annotations

import enum
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

from cachetools import TTLCache

from app.config import settings
from app.errors import ConflictError

logger = logging.getLogger(__name__)

_RESERVED = "__reserved__"
_KEY_PREFIX = "idempotency:"


class IdempotencyState(str, enum.Enum):
    fresh = "fresh"
    completed = "completed"
    in_progress = "in_progress"


@dataclass(frozen=True)
class IdempotencyOutcome:
    state: IdempotencyState
    result: dict | None = None


class MemoryIdempotencyStore:
    """Reservations expire after ``reservation_seconds`` so a caller that dies
    mid-flight does not block the key; stored results keep ``ttl_seconds``."""

    def __init__(
        self,
        ttl_seconds: int,
        max_entries: int,
        reservation_seconds: int | None = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        reservation = min(
            reservation_seconds or settings.idempotency_reservation_seconds, ttl_seconds
        )
        self._cache: TTLCache[str, str] = TTLCache(
            maxsize=max_entries, ttl=ttl_seconds, timer=timer
        )
        self._reserved: TTLCache[str, bool] = TTLCache(
            maxsize=max_entries, ttl=reservation, timer=timer
        )
        self._lock = Lock()

    def check_and_reserve(self, key: str) -> IdempotencyOutcome:
        with self._lock:
            current = self._cache.get(key)
            if current is None:
                if key in self._reserved:
                    return IdempotencyOutcome(IdempotencyState.in_progress)
                self._reserved[key] = True
                return IdempotencyOutcome(IdempotencyState.fresh)
        return _outcome_from_value(current)

    def store(self, key: str, result: dict) -> None:
        with self._lock:
            self._reserved.pop(key, None)
            self._cache[key] = json.dumps(result, default=str)

    def release(self, key: str) -> None:
        with self._lock:
            self._reserved.pop(key, None)
            self._cache.pop(key, None)


class RedisIdempotencyStore:
    def __init__(
        self,
        client: Any,
        ttl_seconds: int,
        fallback: MemoryIdempotencyStore,
        reservation_seconds: int | None = None,
    ) -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._reservation_ttl = min(
            reservation_seconds or settings.idempotency_reservation_seconds, ttl_seconds
        )
        self._fallback = fallback

    def check_and_reserve(self, key: str) -> IdempotencyOutcome:
        name = _KEY_PREFIX + key
        try:
            if self._client.set(name, _RESERVED, nx=True, ex=self._reservation_ttl):
                return IdempotencyOutcome(IdempotencyState.fresh)
            current = self._client.get(name)
        except Exception as exc:
            logger.warning(
                "Idempotency: Redis error (%s), using fallback",
                exc.__class__.__name__,
            )
            return self._fallback.check_and_reserve(key)
        if current is None:
            # Expired between SET and GET; try once more.
            return self.check_and_reserve(key)
        return _outcome_from_value(current)

    def store(self, key: str, result: dict) -> None:
        try:
            self._client.set(
                _KEY_PREFIX + key, json.dumps(result, default=str), ex=self._ttl
            )
        except Exception as exc:
            logger.warning(
                "Idempotency: Redis error (%s) storing result, using fallback",
                exc.__class__.__name__,
            )
            self._fallback.store(key, result)

    def release(self, key: str) -> None:
        try:
            self._client.delete(_KEY_PREFIX + key)
        except Exception as exc:
            logger.warning(
                "Idempotency: Redis error (%s) releasing key, using fallback",
                exc.__class__.__name__,
            )
            self._fallback.release(key)


IdempotencyStore = MemoryIdempotencyStore | RedisIdempotencyStore


def _outcome_from_value(value: str) -> IdempotencyOutcome:
    if value == _RESERVED:
        return IdempotencyOutcome(IdempotencyState.in_progress)
    return IdempotencyOutcome(IdempotencyState.completed, json.loads(value))


def _get_redis() -> Any | None:
    """Lazy-connect to Redis. Returns None if unavailable."""
    try:
        import redis as redis_lib

        return redis_lib.Redis.from_url(
            settings.redis_url, decode_responses=True, socket_timeout=1
        )
    except Exception:
        logger.debug("Idempotency: Redis unavailable, using memory store")
        return None


_store: IdempotencyStore | None = None
_store_lock = Lock()


def get_idempotency_store() -> IdempotencyStore:
    global _store
    with _store_lock:
        if _store is None:
            memory = MemoryIdempotencyStore(
                settings.idempotency_ttl_seconds, settings.idempotency_max_entries
            )
            client = _get_redis() if settings.idempotency_backend == "redis" else None
            if client is None:
                _store = memory
            else:
                _store = RedisIdempotencyStore(
                    client, settings.idempotency_ttl_seconds, memory
                )
        return _store


def set_idempotency_store(store: IdempotencyStore | None) -> None:
    global _store
    with _store_lock:
        _store = store


def run_idempotent(
    scope: str,
    key: str | None,
    fn: Callable[[], tuple[int, Any]],
    store: IdempotencyStore | None = None,
) -> tuple[int, Any]:
    """Run ``fn`` once per ``scope:key`` and replay its (status, body) afterwards.

    Without a key the call is not deduplicated. A duplicate that arrives while
    the first call is still running gets a conflict. Errors release the key so
    the caller may retry.
    """
    if not key:
        return fn()
    store = store or get_idempotency_store()
    record_key = f"{scope}:{key}"
    outcome = store.check_and_reserve(record_key)
    if outcome.state == IdempotencyState.completed and outcome.result is not None:
        logger.info("Idempotent replay for %s", record_key)
        return outcome.result["status"], outcome.result["body"]
    if outcome.state == IdempotencyState.in_progress:
        raise ConflictError(
            "A request with this Idempotency-Key is already in progress",
            details={"idempotency_key": key},
        )
    try:
        status_code, body = fn()
    except Exception:
        store.release(record_key)
        raise
    store.store(record_key, {"status": status_code, "body": body})
    return status_code, body
