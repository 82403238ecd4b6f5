from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import random
from typing import Any, AsyncIterator, Awaitable, Callable

from backupvault.core.config import get_settings
from backupvault.core.errors import TransientStorageError
from backupvault.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


TransientException = (TransientStorageError, TimeoutError, ConnectionError)


def is_transient(exc: Exception) -> bool:
    # Retry only transient network/timeout failures; crypto and codec errors fail fast.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def storage_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.storage_timeout_ms,
        max_attempts=settings.storage_retry_attempts,
        backoff_ms=settings.storage_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "external",
) -> Any:
    # Retry helper with jittered exponential backoff and a per-attempt timeout.
    policy = policy or storage_retry_policy()
    retryable = retryable or is_transient
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter(f"retries_total.{operation}")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.warning(
                "retry_scheduled operation=%s attempt=%s sleep_s=%.2f error=%s",
                operation,
                attempt,
                sleep_s,
                type(exc).__name__,
            )
            await asyncio.sleep(sleep_s)
            attempt += 1


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Cap concurrent table captures so source connections are not exhausted.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)
        self._in_flight = 0
        self._peak = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def peak(self) -> int:
        return self._peak

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        # Wait for a free slot; waiters are served in arrival order.
        async with self._sem:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
            set_gauge(f"bulkhead_in_flight.{self._name}", self._in_flight)
            try:
                yield
            finally:
                self._in_flight -= 1
                set_gauge(f"bulkhead_in_flight.{self._name}", self._in_flight)
