"""
Store Retry - Bounded retries for idempotent store writes.

Only grant/consume/expire/consume_usage go through here: their idempotency keys
make a repeated attempt safe. The session is rolled back before each retry.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from metering.config import settings
from metering.exceptions import ConcurrencyError, DatabaseError
from metering.observability.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    PoolTimeoutError,
    ConcurrencyError,
)


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        metrics.record_store_retry(operation)
        logger.warning(
            "store_operation_retry",
            operation=operation,
            attempt=retry_state.attempt_number,
            error_type=type(error).__name__ if error else None,
        )

    return before_sleep


async def with_store_retry(
    session: AsyncSession,
    operation: str,
    func: Callable[[], Awaitable[T]],
) -> T:
    """
    Run func, retrying transient store errors a bounded number of times.

    Raises:
        DatabaseError: If every attempt failed with a transient error
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(settings.store_retry_attempts),
        wait=wait_exponential(multiplier=0.05, max=settings.store_retry_max_wait_seconds),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=_log_retry(operation),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                try:
                    return await func()
                except TRANSIENT_ERRORS:
                    await session.rollback()
                    raise
    except TRANSIENT_ERRORS as e:
        logger.error("store_operation_failed", operation=operation, error=str(e))
        raise DatabaseError(f"{operation} failed after retries") from e

    raise DatabaseError(f"{operation} did not run")  # pragma: no cover
