"""Retry policies for catalog lookups and SQLite writes, built on tenacity."""

import logging
import sqlite3

import httpx
import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.stdlib.get_logger(__name__)

# Gateway-style statuses worth another attempt; 4xx never is
RETRYABLE_STATUS = frozenset({429, 502, 503, 504})

TRANSIENT_HTTP_ERRORS = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.RemoteProtocolError,
)


def is_transient_http_error(exc: BaseException) -> bool:
    """True for network blips and gateway statuses a retry can plausibly fix."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS
    return isinstance(exc, TRANSIENT_HTTP_ERRORS)


def is_locked_error(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()


def _policy(predicate, max_attempts: int, multiplier: float, min_wait: float, max_wait: float):
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        retry=retry_if_exception(predicate),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def catalog_retry(max_attempts: int = 3, min_wait: float = 2.0, max_wait: float = 10.0):
    """Retry decorator for catalog HTTP calls.

    Args:
        max_attempts: Total attempts including the first
        min_wait: Floor of the exponential backoff (seconds)
        max_wait: Ceiling of the exponential backoff (seconds)
    """
    return _policy(is_transient_http_error, max_attempts, 1, min_wait, max_wait)


def storage_retry(max_attempts: int = 3, min_wait: float = 0.05, max_wait: float = 1.0):
    """Retry decorator for SQLite writes that hit "database is locked".

    Only lock contention is retried; every other sqlite error surfaces immediately.
    """
    return _policy(is_locked_error, max_attempts, 0.05, min_wait, max_wait)
