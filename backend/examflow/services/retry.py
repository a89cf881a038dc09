# Retry logic with exponential backoff for transient store/network failures.
# Used by the interactive submission path; queue-level retries are scheduled
# by SubmissionQueue.mark_failed instead.

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from pymongo.errors import ConnectionFailure, ExecutionTimeout, WTimeoutError

from ..errors import RetryTimeoutError

logger = logging.getLogger(__name__)

TRANSIENT_EXCEPTIONS = (
    ConnectionFailure,  # AutoReconnect, NetworkTimeout, ServerSelectionTimeoutError
    ExecutionTimeout,
    WTimeoutError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

TRANSIENT_MESSAGE_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporarily unavailable",
    "too many requests",
    "rate limit",
    "429",
    "econnreset",
    "econnrefused",
    "socket hang up",
)

MAX_JITTER_RATIO = 0.3


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    timeout: float = 30.0  # overall budget, checked before each attempt


DEFAULT = RetryConfig()
EXAM_SUBMISSION = RetryConfig(max_attempts=4, initial_delay=0.5, max_delay=5.0, timeout=60.0)
AUTO_SAVE = RetryConfig(max_attempts=2, initial_delay=0.2, max_delay=1.0, timeout=5.0)


def is_transient_error(error: BaseException) -> bool:
    """True for network/timeout/rate-limit failures worth another attempt."""
    if error is None or isinstance(error, RetryTimeoutError):
        return False
    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return True
    error_msg = str(error).lower()
    return any(pattern in error_msg for pattern in TRANSIENT_MESSAGE_PATTERNS)


class RetryPolicy:
    """Runs async operations with exponential backoff and jitter."""

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sleep = sleep
        self._rand = rand
        self._clock = clock

    def base_delay(self, attempt: int, config: RetryConfig) -> float:
        """Delay before the retry that follows ``attempt`` (1-based), without jitter."""
        return min(config.max_delay, config.initial_delay * config.backoff_multiplier ** (attempt - 1))

    def delay_for(self, attempt: int, config: RetryConfig) -> float:
        delay = self.base_delay(attempt, config)
        return delay + self._rand() * MAX_JITTER_RATIO * delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        config: RetryConfig = DEFAULT,
        label: str = "operation",
    ) -> Any:
        """
        Await ``operation()`` until it succeeds or retrying stops making sense.

        Non-transient errors propagate immediately. A transient error on the
        last attempt propagates as-is. Raises RetryTimeoutError when the
        overall budget is spent before an attempt starts.
        """
        started = self._clock()
        last_error: Optional[BaseException] = None

        for attempt in range(1, config.max_attempts + 1):
            elapsed = self._clock() - started
            if elapsed > config.timeout:
                logger.error(f"❌ {label}: total timeout exceeded after {attempt - 1} attempts")
                raise RetryTimeoutError(elapsed, attempt - 1, last_error)

            try:
                result = await operation()
                if attempt > 1:
                    logger.info(f"✅ {label} succeeded on attempt {attempt}")
                return result

            except Exception as e:
                last_error = e
                if not is_transient_error(e) or attempt >= config.max_attempts:
                    logger.error(f"❌ {label} failed after {attempt} attempts: {e}")
                    raise

                wait_time = self.delay_for(attempt, config)
                logger.warning(
                    f"⚠️ {label}: attempt {attempt}/{config.max_attempts} failed ({str(e)[:100]}). "
                    f"Retrying in {wait_time:.2f}s..."
                )
                await self._sleep(wait_time)

        raise last_error

    async def retry_auto_save(
        self,
        save: Callable[[Dict[str, Any]], Awaitable[Any]],
        payload: Dict[str, Any],
    ) -> Any:
        """Best-effort auto-save. Never raises; the caller retries on its next tick."""
        try:
            return await self.execute(lambda: save(payload), AUTO_SAVE, label="auto-save")
        except Exception as e:
            logger.warning(f"⚠️ Auto-save failed, will retry on next interval: {e}")
            return {
                "success": False,
                "message": "Auto-save failed, will retry on next interval",
                "error": str(e),
            }
