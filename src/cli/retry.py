"""Retry utilities with exponential backoff."""

import logging
import sqlite3

import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.stdlib.get_logger(__name__)


def _is_locked_error(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and (
        "locked" in str(exc).lower() or "busy" in str(exc).lower()
    )


def db_retry(
    max_attempts: int = 5,
    min_wait: float = 0.05,
    max_wait: float = 1.0,
):
    """Retry decorator for SQLite writes that hit ``database is locked``.

    Channels append concurrently with the supervisor's own writes; contention
    beyond the busy timeout is retried, every other error propagates.

    Args:
        max_attempts: Max retry attempts
        min_wait: Min wait between retries (seconds)
        max_wait: Max wait between retries (seconds)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.05, min=min_wait, max=max_wait),
        retry=retry_if_exception(_is_locked_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
