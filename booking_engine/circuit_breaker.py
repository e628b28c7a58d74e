"""
Circuit breaker guarding the Google Calendar dependency.

States:
  - CLOSED: allow traffic, count failures inside the window
  - OPEN: reject immediately until recovery_timeout has elapsed
  - HALF_OPEN: admit a single probe; success closes, failure reopens
"""

import asyncio
import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import CircuitOpenError, RetryExhaustedError
from .retry import is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def is_dependency_failure(error: BaseException) -> bool:
    """Only outages count against the breaker; a 4xx proves the dependency answered"""
    return isinstance(error, RetryExhaustedError) or is_retryable_error(error)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        window_seconds: float = 60.0,
        is_failure: Callable[[BaseException], bool] = is_dependency_failure,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.window_seconds = window_seconds
        self._is_failure = is_failure
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._failures)

    def _prune(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.window_seconds:
            self._failures.popleft()

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._probe_in_flight = False

    def _before_call(self) -> None:
        with self._lock:
            now = self._clock()

            if self._state == CircuitState.OPEN:
                elapsed = now - (self._opened_at or now)
                if elapsed < self.recovery_timeout:
                    raise CircuitOpenError(self.name, retry_after=self.recovery_timeout - elapsed)
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                logger.info(f"🔄 Circuit {self.name}: OPEN -> HALF_OPEN (probing)")
                return

            if self._state == CircuitState.HALF_OPEN:
                # One probe at a time
                if self._probe_in_flight:
                    raise CircuitOpenError(self.name)
                self._probe_in_flight = True

    def _record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"✅ Circuit {self.name}: HALF_OPEN -> CLOSED")
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = None
            self._probe_in_flight = False

    def _record_failure(self) -> None:
        with self._lock:
            now = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._open(now)
                logger.warning(f"🚨 Circuit {self.name}: HALF_OPEN -> OPEN (probe failed)")
                return

            self._failures.append(now)
            self._prune(now)
            if self._state == CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._open(now)
                logger.error(
                    f"🚨 Circuit {self.name}: CLOSED -> OPEN ({len(self._failures)} failures)"
                )

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute a coroutine function through the breaker.

        Raises:
            CircuitOpenError: if the circuit is open, or half-open with a probe running
        """
        self._before_call()
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            self._release_probe()
            raise
        except Exception as e:
            if self._is_failure(e):
                self._record_failure()
            else:
                self._record_success()
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        """Manually reset the circuit breaker"""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = None
            self._probe_in_flight = False
        logger.info(f"🔄 Circuit {self.name}: manually reset to CLOSED")

    def snapshot(self) -> dict:
        with self._lock:
            now = self._clock()
            self._prune(now)
            retry_after = None
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                retry_after = max(0.0, self.recovery_timeout - (now - self._opened_at))
            return {
                "name": self.name,
                "state": self._state.value,
                "failureCount": len(self._failures),
                "failureThreshold": self.failure_threshold,
                "recoveryTimeoutSeconds": self.recovery_timeout,
                "retryAfterSeconds": retry_after,
            }
