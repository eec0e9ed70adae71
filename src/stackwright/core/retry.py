"""Retry policy shared by the execution engine and the binder."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from stackwright.core.errors import BackendError

logger = structlog.get_logger()


def is_transient(exc: BaseException) -> bool:
    """Whether an error should be retried."""
    if isinstance(exc, BackendError):
        return exc.transient
    return isinstance(exc, (asyncio.TimeoutError, TimeoutError))


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient backend errors."""

    max_attempts: int = 5
    multiplier: float = 1.0
    min_seconds: float = 0.5
    max_seconds: float = 30.0

    @classmethod
    def immediate(cls, max_attempts: int = 3) -> RetryPolicy:
        """Policy without waits, for tests and local backends."""
        return cls(max_attempts=max_attempts, multiplier=0, min_seconds=0, max_seconds=0)

    def retrying(self, *, attempts: int | None = None) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(attempts or self.max_attempts),
            wait=wait_exponential(
                multiplier=self.multiplier,
                min=self.min_seconds,
                max=self.max_seconds,
            ),
            before_sleep=_log_retry,
            reraise=True,
        )


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "transient_error_retry",
        attempt=state.attempt_number,
        error=str(exc),
        error_type=type(exc).__name__,
    )
