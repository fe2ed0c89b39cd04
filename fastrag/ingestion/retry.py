"""Retry, timeout and metrics machinery shared by every connector."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import (
    DataSourceError,
    MaxRetriesExceededError,
    RateLimitError,
    SourceTimeoutError,
    classify_error,
)
from .models import ConnectorMetrics, SourceConfigBase

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT = 30.0  # seconds
BASE_DELAY = 1.0
BACKOFF_MULTIPLIER = 2.0
MAX_DELAY = 30.0
JITTER_RATIO = 0.1
METRICS_ALPHA = 0.1

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    *,
    base_delay: float = BASE_DELAY,
    multiplier: float = BACKOFF_MULTIPLIER,
    max_delay: float = MAX_DELAY,
    jitter: float = JITTER_RATIO,
) -> float:
    """Delay before retrying after the ``attempt``-th failure (1-based)."""

    delay = min(base_delay * multiplier ** (attempt - 1), max_delay)
    return delay + random.uniform(0, delay * jitter)


class RetryGuard:
    """Bounded retries, a hard deadline and response-time metrics.

    Every connector owns one guard. Operations are zero-argument callables
    returning an awaitable so each attempt starts a fresh coroutine.
    """

    def __init__(
        self,
        source_id: str,
        config: SourceConfigBase | None = None,
        *,
        base_delay: float = BASE_DELAY,
        multiplier: float = BACKOFF_MULTIPLIER,
        max_delay: float = MAX_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.source_id = source_id
        self.config = config
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self._sleep = sleep
        self._metrics = ConnectorMetrics()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def max_attempts(self) -> int:
        if self.config is not None and self.config.retry_attempts is not None:
            return self.config.retry_attempts
        return DEFAULT_MAX_ATTEMPTS

    @property
    def timeout(self) -> float:
        if self.config is not None and self.config.timeout is not None:
            return float(self.config.timeout)
        return DEFAULT_TIMEOUT

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        *,
        description: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds or the retry budget is spent."""

        attempts = self.max_attempts if max_attempts is None else max_attempts
        attempts = max(1, attempts)
        last_error: DataSourceError | None = None

        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                result = await operation()
            except Exception as exc:
                self._record_failure()
                error = classify_error(exc, self.source_id)
                last_error = error
                if not error.retryable:
                    if error is exc:
                        raise
                    raise error from exc
                if attempt == attempts:
                    break
                delay = backoff_delay(
                    attempt,
                    base_delay=self.base_delay,
                    multiplier=self.multiplier,
                    max_delay=self.max_delay,
                )
                if isinstance(error, RateLimitError) and error.retry_after:
                    delay = max(delay, float(error.retry_after))
                logger.warning(
                    "%s failed, retrying",
                    description,
                    extra={
                        "source_id": self.source_id,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "delay": round(delay, 3),
                        "error": error.message,
                    },
                )
                await self._sleep(delay)
            else:
                self._record_success((time.perf_counter() - started) * 1000)
                return result

        raise MaxRetriesExceededError(
            f"{description} failed after {attempts} attempts: "
            f"{last_error.message if last_error else 'unknown error'}",
            self.source_id,
            last_error,
        ) from last_error

    async def execute_with_timeout(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run one attempt of ``operation`` under a deadline in seconds."""

        deadline = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(operation(), timeout=deadline)
        except asyncio.TimeoutError as exc:
            raise SourceTimeoutError(
                f"operation timed out after {deadline * 1000:.0f}ms", self.source_id
            ) from exc

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        *,
        timeout: float | None = None,
        description: str = "operation",
    ) -> T:
        """Retry ``operation`` with every attempt bounded by the deadline."""

        return await self.execute(
            lambda: self.execute_with_timeout(operation, timeout),
            max_attempts,
            description=description,
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _record_success(self, elapsed_ms: float) -> None:
        metrics = self._metrics
        metrics.total_queries += 1
        metrics.successful_queries += 1
        metrics.last_query_time = datetime.now(timezone.utc)
        if metrics.successful_queries == 1:
            metrics.average_response_time = elapsed_ms
        else:
            metrics.average_response_time = (
                METRICS_ALPHA * elapsed_ms
                + (1 - METRICS_ALPHA) * metrics.average_response_time
            )

    def _record_failure(self) -> None:
        self._metrics.total_queries += 1
        self._metrics.failed_queries += 1
        self._metrics.last_query_time = datetime.now(timezone.utc)

    def get_metrics(self) -> ConnectorMetrics:
        return self._metrics.model_copy()

    def reset_metrics(self) -> None:
        self._metrics = ConnectorMetrics()


__all__ = ["RetryGuard", "backoff_delay"]
