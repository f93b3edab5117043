"""Circuit breaker for outbound provider calls.

CLOSED passes calls through and counts consecutive failures. After
``failure_threshold`` failures the breaker goes OPEN and rejects calls until
``timeout`` seconds pass, then HALF_OPEN lets calls probe the provider;
``success_threshold`` successes close it again, one failure reopens it.
"""
from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, TypeVar

from app.errors import GatewayUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


def _always(exc: BaseException) -> bool:
    return True


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    timeout: float = 30.0
    success_threshold: int = 1
    is_failure: Callable[[BaseException], bool] = field(default=_always)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = Lock()
        self._state = CircuitState.closed
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.open
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.config.timeout
        ):
            self._state = CircuitState.half_open
            self._success_count = 0
            logger.info("Circuit breaker %s entering half-open state", self.name)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.open:
                raise GatewayUnavailableError(
                    f"{self.name} is unavailable (circuit open)",
                    details={"provider": self.name},
                )
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            if self.config.is_failure(exc):
                self._on_failure()
            else:
                self._on_success()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            if self._state == CircuitState.half_open:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._state = CircuitState.closed
                    self._opened_at = None
                    logger.info("Circuit breaker %s closed after recovery", self.name)

    def _on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if (
                self._state == CircuitState.half_open
                or self._failure_count >= self.config.failure_threshold
            ):
                self._state = CircuitState.open
                self._opened_at = self._clock()
                logger.warning(
                    "Circuit breaker %s opened after %d failures",
                    self.name,
                    self._failure_count,
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.closed
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None
