"""
Retry with exponential backoff for flaky remote calls (Google Calendar API).

delay = min(base_delay * multiplier ** (attempt - 1), max_delay)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .exceptions import CircuitOpenError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Lower-cased fragments of transient provider / network failures
TRANSIENT_MESSAGE_MARKERS = (
    "quota exceeded",
    "rate limit exceeded",
    "econnreset",
    "enotfound",
    "econnrefused",
    "timeout",
    "timed out",
    "backend error",
    "internal error",
    "service temporarily unavailable",
)


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify an error as transient (retry) or terminal (surface immediately).

    Network errors, 429 and 5xx are transient. Any other 4xx is terminal.
    """
    if isinstance(error, (CircuitOpenError, RetryExhaustedError)):
        return False

    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
            return True
        if 400 <= status_code < 500:
            return False

    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt that follows `attempt` (1-based)"""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)


class RetryExecutor:
    """
    Runs an async operation until it succeeds, fails terminally or runs out of attempts.

    Terminal errors are re-raised unchanged after the first attempt. When all
    attempts fail with transient errors a RetryExhaustedError is raised,
    chained from the last error.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.is_retryable = is_retryable
        self._sleep = sleep

    async def run(self, operation: Callable[[], Awaitable[T]], operation_name: str = "operation") -> T:
        max_attempts = max(1, self.policy.max_attempts)
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await operation()
            except Exception as e:
                retryable = self.is_retryable(e)
                if not retryable:
                    logger.warning(f"❌ {operation_name} failed with non-retryable error: {e}")
                    raise

                if attempt >= max_attempts:
                    logger.error(f"🚫 {operation_name}: all {max_attempts} attempts failed")
                    raise RetryExhaustedError(operation_name, attempt, e) from e

                delay = self.policy.delay_for(attempt)
                logger.warning(
                    f"⚠️ {operation_name} attempt {attempt}/{max_attempts} failed: {e} - retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
            else:
                if attempt > 1:
                    logger.info(f"✅ {operation_name} succeeded on attempt {attempt}/{max_attempts}")
                return result
