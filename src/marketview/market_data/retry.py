"""HTTP requests with bounded exponential-backoff retry and jitter.

Only transient failures are retried: HTTP 429, HTTP 5xx and transport
errors such as timeouts or refused connections. Any other non-2xx response
is handed back to the caller untouched so it can tell a terminal failure
from an exhausted retryable one.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx

from marketview.config import RetrySettings
from marketview.logging import get_logger

logger = get_logger(__name__)

_TRANSIENT_SIGNATURES = ("timeout", "timed out", "econnrefused", "etimedout", "network")


class ErrorKind(str, Enum):
    """Classification passed to retry observers."""

    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK = "network"


class RetryObserver(Protocol):
    """Optional sink notified before each retry sleep."""

    def __call__(self, attempt: int, error: ErrorKind) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for a single logical request."""

    retries: int = 3
    backoff_base_ms: int = 300
    max_backoff_ms: int = 5000
    jitter: bool = True
    timeout_ms: int = 8000

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            retries=settings.retries,
            backoff_base_ms=settings.backoff_base_ms,
            max_backoff_ms=settings.max_backoff_ms,
            jitter=settings.jitter,
            timeout_ms=settings.timeout_ms,
        )


def calculate_backoff(
    attempt: int,
    base_ms: int,
    max_ms: int,
    jitter: bool,
    rng: Callable[[], float] = random.random,
) -> int:
    """Return the delay in ms before retrying after 0-indexed ``attempt``.

    ``min(base * 2^attempt, max)``; with jitter a uniform value in ``[0, delay]``.
    """
    delay = min(base_ms * (2**attempt), max_ms)
    if not jitter:
        return delay
    return int(rng() * delay)


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def is_retryable_error(exc: BaseException) -> bool:
    """Return True for transport failures worth retrying."""
    if isinstance(
        exc,
        (
            httpx.TimeoutException,
            httpx.NetworkError,
            asyncio.TimeoutError,
            ConnectionRefusedError,
            ConnectionResetError,
        ),
    ):
        return True
    message = str(exc).lower()
    return any(signature in message for signature in _TRANSIENT_SIGNATURES)


def _classify(status: int | None) -> ErrorKind:
    if status is None:
        return ErrorKind.NETWORK
    if status == 429:
        return ErrorKind.RATE_LIMITED
    return ErrorKind.SERVER_ERROR


def _notify(observer: RetryObserver | None, attempt: int, kind: ErrorKind) -> None:
    if observer is None:
        return
    try:
        observer(attempt, kind)
    except Exception as e:
        # Observers are for logging/metrics and must not change control flow
        logger.warning("retry_observer_failed", error=str(e))


async def fetch_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: RetryPolicy | None = None,
    on_retry: RetryObserver | None = None,
    **request_kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying transient failures with exponential backoff.

    Makes at most ``policy.retries + 1`` attempts. Each attempt, body
    included, is aborted once it has run for ``policy.timeout_ms``; the
    httpx timeout alone only bounds each connect/read step. After the last
    attempt a retryable bad response is returned as-is and a transport
    error (including TimeoutError) is re-raised.
    """
    policy = policy or RetryPolicy()
    timeout = httpx.Timeout(policy.timeout_ms / 1000)

    for attempt in range(policy.retries + 1):
        status: int | None = None
        try:
            async with asyncio.timeout(policy.timeout_ms / 1000):
                response = await client.request(
                    method, url, timeout=timeout, **request_kwargs
                )
        except Exception as e:
            if not is_retryable_error(e):
                logger.error("fetch_failed_non_retryable", url=url, error=repr(e))
                raise
            if attempt >= policy.retries:
                logger.error(
                    "fetch_failed_permanently",
                    url=url,
                    attempts=attempt + 1,
                    error=repr(e),
                )
                raise
            error_text = repr(e)
        else:
            if response.is_success:
                if attempt > 0:
                    logger.info("fetch_succeeded_after_retry", url=url, retries=attempt)
                return response

            status = response.status_code
            if not is_retryable_status(status):
                logger.warning("fetch_non_retryable_status", url=url, status=status)
                return response

            if attempt >= policy.retries:
                logger.error(
                    "fetch_failed_permanently",
                    url=url,
                    attempts=attempt + 1,
                    status=status,
                )
                return response
            error_text = f"HTTP {status}"

        delay_ms = calculate_backoff(
            attempt, policy.backoff_base_ms, policy.max_backoff_ms, policy.jitter
        )
        logger.warning(
            "fetch_retry",
            url=url,
            attempt=attempt + 1,
            max_attempts=policy.retries + 1,
            delay_ms=delay_ms,
            error=error_text,
        )
        _notify(on_retry, attempt + 1, _classify(status))
        await asyncio.sleep(delay_ms / 1000)

    raise AssertionError("unreachable")  # pragma: no cover
