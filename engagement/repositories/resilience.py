"""Resilience patterns for remote store operations.

Provides retry with exponential backoff and per-attempt timeouts for
handling transient failures when writing to the authoritative store.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from engagement.repositories.exceptions import StoreTimeoutError, TransientStoreError
from engagement.shared.utils.logging import get_logger

if TYPE_CHECKING:
    from engagement.config import EngagementSettings

logger = get_logger(__name__)

T = TypeVar("T")


def sanitize_error_for_logging(error: Exception) -> str:
    """Describe an error by type only; messages may carry URLs or credentials."""
    error_type = type(error).__name__
    safe_messages = {
        "StoreConnectionError": "Remote store connection failed",
        "StoreTimeoutError": "Remote store call timed out",
        "TransientStoreError": "Remote store temporarily unavailable",
        "RemoteRejectedError": "Remote store rejected the request",
        "StaleWriteError": "Remote store refused a stale write",
        "TimeoutError": "Operation timed out",
        "OSError": "System I/O error",
        "ConnectError": "HTTP connection failed",
        "ReadTimeout": "HTTP read timed out",
        "OperationalError": "Database operational error",
        "IntegrityError": "Data integrity constraint violation",
    }

    return safe_messages.get(error_type, f"Error of type {error_type}")


@dataclass
class RetryConfig:
    """Attempt count and backoff curve for remote writes.

    The delay after failed attempt n is base_delay * exponential_base**n,
    capped at max_delay and optionally scaled by a 0.5-1.5 jitter factor.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 4.0
    exponential_base: float = 2.0
    jitter: bool = False
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (
            TransientStoreError,
            TimeoutError,
            OSError,
        )
    )

    @classmethod
    def from_settings(cls, settings: EngagementSettings) -> RetryConfig:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            exponential_base=settings.retry_exponential_base,
            jitter=settings.retry_jitter,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait after the 0-indexed ``attempt`` failed."""
        backoff = self.base_delay * self.exponential_base ** attempt
        capped = min(backoff, self.max_delay)
        return capped * (0.5 + random.random()) if self.jitter else capped


async def call_with_timeout(
    func: Callable[[], Awaitable[T]],
    timeout: float | None,
) -> T:
    """Await ``func()`` bounded by ``timeout`` seconds.

    Raises:
        StoreTimeoutError: If the call does not finish in time
    """
    if timeout is None:
        return await func()
    try:
        return await asyncio.wait_for(func(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StoreTimeoutError(
            f"Remote call exceeded {timeout}s", original_error=e
        ) from e


async def retry_call(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    timeout: float | None = None,
    operation: str | None = None,
) -> T:
    """Call ``func`` with retries on retryable errors.

    Each attempt is bounded by ``timeout``. The last error is re-raised once
    attempts are exhausted; non-retryable errors propagate immediately.
    """
    _config = config or RetryConfig()
    name = operation or getattr(func, "__name__", "call")
    attempts = max(1, _config.max_attempts)

    for attempt in range(attempts):
        try:
            return await call_with_timeout(func, timeout)
        except _config.retryable_exceptions as e:
            if attempt < attempts - 1:
                delay = _config.calculate_delay(attempt)
                logger.warning(
                    "retry_attempt",
                    operation=name,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay=round(delay, 3),
                    error_type=type(e).__name__,
                    error_msg=sanitize_error_for_logging(e),
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    "retry_exhausted",
                    operation=name,
                    max_attempts=attempts,
                    error_type=type(e).__name__,
                    error_msg=sanitize_error_for_logging(e),
                )
                raise

    raise RuntimeError("Unexpected state: no result and no exception")


__all__ = [
    "RetryConfig",
    "call_with_timeout",
    "retry_call",
    "sanitize_error_for_logging",
]
