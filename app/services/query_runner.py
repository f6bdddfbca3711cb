"""
Cache + retry wrapper around the persistence gateway.

Reads may be served from the shared CacheService; writes invalidate the
cache tags they declare once they commit. Every gateway call is retried on
transient failures with linear backoff and timed for slow-query reporting.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import BookingEngineError, DatabaseError, TransientStoreError
from app.services.cache_service import CacheService, make_cache_key
from app.services.persistence_gateway import PersistenceGateway, Work
from app.services.retry import RetryPolicy, error_code, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueryRunner:
    def __init__(
        self,
        gateway: PersistenceGateway,
        cache: CacheService,
        retry: RetryPolicy | None = None,
        slow_query_threshold_ms: int = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.cache = cache
        self.retry = retry or RetryPolicy()
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self._sleep = sleep
        self.slow_queries = 0
        self.retries = 0

    async def read(
        self,
        operation: str,
        work: Work[T],
        *,
        params: dict[str, Any] | None = None,
        cache: bool = False,
        ttl: float | None = None,
        timeout: float | None = None,
    ) -> T:
        if not cache:
            return await self._execute(operation, work, timeout)
        key = make_cache_key(operation, params)
        hit, value = self.cache.lookup(key)
        if hit:
            return value
        value = await self._execute(operation, work, timeout)
        self.cache.set(key, value, ttl)
        return value

    async def write(
        self,
        operation: str,
        work: Work[T],
        *,
        invalidates: Iterable[str] = (),
        timeout: float | None = None,
    ) -> T:
        result = await self._execute(operation, work, timeout)
        self.cache.invalidate(invalidates)
        return result

    async def _execute(self, operation: str, work: Work[T], timeout: float | None) -> T:
        max_attempts = self.retry.max_retries + 1
        for attempt in range(1, max_attempts + 1):
            started = time.perf_counter()
            try:
                result = await self.gateway.execute(operation, work, timeout=timeout)
            except BookingEngineError as e:
                # validation and conflict failures are answers, not outages
                if not isinstance(e, TransientStoreError):
                    raise
                await self._handle_failure(operation, e, attempt, max_attempts)
            except Exception as e:
                if not is_retryable(e) and not isinstance(e, SQLAlchemyError):
                    raise
                await self._handle_failure(operation, e, attempt, max_attempts)
            else:
                self._record_duration(operation, started)
                return result
        # _handle_failure raises on the last attempt
        raise DatabaseError(f"{operation} failed", operation=operation, attempts=max_attempts)

    async def _handle_failure(self, operation: str, exc: Exception, attempt: int, max_attempts: int) -> None:
        if is_retryable(exc) and attempt < max_attempts:
            self.retries += 1
            delay = self.retry.delay_for(attempt)
            logger.warning(
                "Retrying %s (attempt %d/%d, code=%s, delay=%.2fs): %s",
                operation, attempt, max_attempts, error_code(exc), delay, exc,
            )
            await self._sleep(delay)
            return
        logger.error("%s failed after %d attempt(s): %s", operation, attempt, exc)
        raise DatabaseError(
            f"{operation} failed after {attempt} attempt(s): {exc}",
            operation=operation,
            attempts=attempt,
        ) from exc

    def _record_duration(self, operation: str, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        if duration_ms > self.slow_query_threshold_ms:
            self.slow_queries += 1
            logger.warning(
                "Slow query detected: %s took %dms (threshold %dms)",
                operation, duration_ms, self.slow_query_threshold_ms,
            )

    def stats(self) -> dict[str, int]:
        return {"retries": self.retries, "slow_queries": self.slow_queries}
