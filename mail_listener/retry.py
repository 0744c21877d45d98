"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import AuthenticationError, MailboxConnectionError

logger = structlog.get_logger()

CONNECT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    MailboxConnectionError,
    OSError,
    asyncio.TimeoutError,
)
FATAL_EXCEPTIONS: tuple[type[BaseException], ...] = (AuthenticationError,)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "retrying",
        operation=getattr(state.fn, "__name__", "call"),
        attempt=state.attempt_number,
        wait_seconds=round(state.next_action.sleep, 2) if state.next_action else None,
        error=str(exc),
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = CONNECT_EXCEPTIONS,
    fatal_exceptions: tuple[type[BaseException], ...] = FATAL_EXCEPTIONS,
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    By default only connection-level failures are retried.  Rejected
    credentials (``AuthenticationError``) and anything outside
    *retryable_exceptions* propagate on the first attempt.

    Usage::

        @with_retry(config.retry)
        async def connect() -> None: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=(
            retry_if_exception_type(retryable_exceptions)
            & retry_if_not_exception_type(fatal_exceptions)
        ),
        before_sleep=_log_retry,
        reraise=True,
    )
