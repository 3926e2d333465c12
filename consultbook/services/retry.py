"""Exponential backoff with jitter around external and record-store calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from consultbook.config import settings
from consultbook.errors import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    initial_wait: float = 0.5
    max_wait: float = 8.0
    jitter: float = 1.0

    @classmethod
    def external(cls) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            initial_wait=settings.retry_initial_wait_seconds,
            max_wait=settings.retry_max_wait_seconds,
            jitter=settings.retry_jitter_seconds,
        )

    @classmethod
    def store(cls) -> "RetryPolicy":
        return cls(
            attempts=settings.store_retry_attempts,
            initial_wait=settings.store_retry_initial_wait_seconds,
            max_wait=settings.store_retry_max_wait_seconds,
            jitter=0.0,
        )


def is_retryable(exc: BaseException) -> bool:
    """Transient faults are retried; everything else aborts on the first failure."""
    if isinstance(exc, ExternalServiceError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError):
        return exc.connection_invalidated
    return False


def _log_before_sleep(operation_name: str) -> Callable[[RetryCallState], None]:
    def log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "%s failed (attempt %d), retrying in %.2fs: %s",
            operation_name,
            state.attempt_number,
            state.next_action.sleep if state.next_action else 0.0,
            exc,
        )

    return log


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    operation_name: str = "operation",
) -> T:
    """Await ``operation`` until it succeeds, a non-retryable fault occurs, or attempts run out.

    The last exception is re-raised unchanged so callers can classify it.
    """
    policy = policy or RetryPolicy.external()
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential_jitter(
            multiplier=policy.initial_wait, max=policy.max_wait, jitter=policy.jitter
        ),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_before_sleep(operation_name),
        reraise=True,
    ):
        with attempt:
            return await operation()
    raise RuntimeError(f"{operation_name} did not run")  # unreachable with reraise=True
